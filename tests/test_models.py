from tfnav.indexer.models import (
    Block,
    ByteRange,
    Edge,
    ParserConfig,
    ProjectIndex,
    build_address,
    extract_provider,
    module_paths_match,
)

from conftest import assert_maps_consistent


def _block(block_kind, name=None, kind=None, file="/w/main.tf", start=0, end=10, module_path=()):
    return Block(
        block_kind=block_kind,
        file=file,
        byte_range=ByteRange(start, end),
        kind=kind,
        name=name,
        provider_hint=extract_provider(kind),
        module_path=module_path,
    )


class TestAddresses:
    def test_resource_and_data(self) -> None:
        assert build_address(_block("resource", "web", "aws_instance")) == "aws_instance.web"
        assert build_address(_block("data", "ubuntu", "aws_ami")) == "data.aws_ami.ubuntu"

    def test_named_kinds(self) -> None:
        assert build_address(_block("module", "vpc")) == "module.vpc"
        assert build_address(_block("variable", "region")) == "var.region"
        assert build_address(_block("output", "vpc_id")) == "vpc_id"
        assert build_address(_block("locals")) == "local"

    def test_module_path_prefix(self) -> None:
        block = _block("resource", "main", "aws_vpc", module_path=("module.net", "module.vpc"))
        assert block.address == "module.net.module.vpc.aws_vpc.main"


def test_extract_provider() -> None:
    assert extract_provider("aws_instance") == "aws"
    assert extract_provider("google_compute_instance") == "google"
    assert extract_provider("random") is None
    assert extract_provider(None) is None


def test_module_paths_match_requires_equal_length() -> None:
    assert module_paths_match((), ())
    assert module_paths_match(("module.a",), ("module.a",))
    assert not module_paths_match(("module.a",), ())
    assert not module_paths_match(("module.a",), ("module.a", "module.b"))
    assert not module_paths_match(("module.a",), ("module.b",))


def test_parser_config_toggles() -> None:
    config = ParserConfig(include_data_sources=False, include_locals=False)
    assert config.includes("resource")
    assert config.includes("module")
    assert config.includes("variable")
    assert not config.includes("data")
    assert not config.includes("locals")


def test_edge_key_and_equality_ignore_attributes() -> None:
    source = _block("resource", "public", "aws_subnet")
    target = _block("resource", "main", "aws_vpc")
    a = Edge(source, target, "reference", {"referenceType": "resource"})
    b = Edge(source, target, "reference", {"referenceType": "other"})
    assert a.key == ("aws_subnet.public", "aws_vpc.main")
    assert a == b
    assert a.reference_type == "resource"


class TestProjectIndex:
    def test_empty(self) -> None:
        index = ProjectIndex.empty()
        assert index.blocks == []
        assert index.refs == []

    def test_rebuild_maps_sorting(self) -> None:
        blocks = [
            _block("resource", "b", "aws_vpc", file="/w/b.tf", start=50, end=60),
            _block("resource", "a", "aws_vpc", file="/w/b.tf", start=0, end=40),
            _block("locals", file="/w/a.tf", start=30, end=35),
            _block("variable", "region", file="/w/a.tf", start=0, end=20),
        ]
        index = ProjectIndex(blocks=blocks)
        index.rebuild_maps()

        assert_maps_consistent(index)
        assert [b.name for b in index.by_type["resource"]] == ["a", "b"]
        assert [b.byte_range.start for b in index.by_file["/w/b.tf"]] == [0, 50]
        assert index.files() == ["/w/a.tf", "/w/b.tf"]
