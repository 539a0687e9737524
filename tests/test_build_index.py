from tfnav.indexer.build_index import (
    BuildOptions,
    IndexBuilder,
    build_index,
    create_index_summary,
    find_blocks,
)
from tfnav.indexer.cache import ParseCache
from tfnav.indexer.files import find_terraform_files

from conftest import assert_maps_consistent

NETWORK_TF = """\
resource "aws_vpc" "main" {
  cidr_block = "10.0.0.0/16"
}

resource "aws_subnet" "public" {
  vpc_id = aws_vpc.main.id
}
"""

VARIABLES_TF = """\
variable "region" {}

variable "az" {}
"""

BROKEN_TF = 'resource "aws_instance" "web" {\n'


class TestBuild:
    def test_builds_sorted_consistent_index(self, write_tf) -> None:
        files = [write_tf("network.tf", NETWORK_TF), write_tf("variables.tf", VARIABLES_TF)]
        result = build_index(files)

        assert result.errors == []
        assert not result.cancelled
        assert_maps_consistent(result.index)
        assert result.stats.files_processed == 2
        assert result.stats.total_blocks == 4
        assert result.stats.block_type_counts == {"resource": 2, "variable": 2}
        assert [b.name for b in result.index.by_type["variable"]] == ["az", "region"]
        assert len(result.index.refs) == 1

    def test_idempotent_rebuild(self, write_tf) -> None:
        files = [write_tf("network.tf", NETWORK_TF), write_tf("variables.tf", VARIABLES_TF)]
        builder = IndexBuilder(cache=ParseCache())
        first = builder.build(files)
        second = builder.build(files)

        assert sorted(first.index.blocks, key=repr) == sorted(second.index.blocks, key=repr)
        assert {e.key for e in first.index.refs} == {e.key for e in second.index.refs}

    def test_progress_callback(self, write_tf) -> None:
        files = [write_tf("a.tf", VARIABLES_TF), write_tf("b.tf", NETWORK_TF)]
        calls = []
        build_index(files, progress_callback=lambda *args: calls.append(args))
        assert calls == [(0, 2, files[0]), (1, 2, files[1]), (2, 2, "Complete")]

    def test_stops_on_first_error(self, write_tf) -> None:
        files = [
            write_tf("a.tf", VARIABLES_TF),
            write_tf("b.tf", BROKEN_TF),
            write_tf("c.tf", NETWORK_TF),
        ]
        result = build_index(files, BuildOptions(continue_on_error=False))

        assert len(result.errors) == 1
        assert result.errors[0].file == files[1]
        assert {b.file for b in result.index.blocks} == {files[0]}

    def test_continue_on_error(self, write_tf) -> None:
        files = [
            write_tf("a.tf", VARIABLES_TF),
            write_tf("b.tf", BROKEN_TF),
            write_tf("c.tf", NETWORK_TF),
        ]
        result = build_index(files, BuildOptions(continue_on_error=True))

        assert len(result.errors) == 1
        assert result.stats.files_with_errors == 1
        assert {b.file for b in result.index.blocks} == {files[0], files[2]}

    def test_unreadable_file(self, write_tf, tmp_path) -> None:
        missing = str(tmp_path / "gone.tf")
        result = build_index([write_tf("a.tf", VARIABLES_TF), missing], BuildOptions(continue_on_error=True))
        assert result.errors[0].file == missing
        assert result.errors[0].error.startswith("Failed to process file")
        assert len(result.index.blocks) == 2

    def test_max_files(self, write_tf) -> None:
        files = [write_tf("a.tf", VARIABLES_TF), write_tf("b.tf", NETWORK_TF)]
        result = build_index(files, BuildOptions(max_files=1))
        assert result.index.files() == [files[0]]

    def test_cancelled_build(self, write_tf) -> None:
        files = [write_tf("a.tf", VARIABLES_TF), write_tf("b.tf", NETWORK_TF)]
        calls = []
        result = build_index(
            files,
            progress_callback=lambda *args: calls.append(args),
            should_cancel=lambda: len(calls) >= 1,
        )
        assert result.cancelled
        assert result.index.refs == []
        assert result.index.files() == [files[0]]
        assert calls[-1] != (2, 2, "Complete")


class TestModuleExpansion:
    def test_expands_local_module(self, write_tf, tmp_path) -> None:
        write_tf("main.tf", 'module "vpc" {\n  source = "./modules/vpc"\n}\n')
        module_file = write_tf("modules/vpc/main.tf", 'resource "aws_vpc" "main" {}\n')
        files = find_terraform_files([str(tmp_path)])

        result = build_index(files, BuildOptions(expand_modules=True))
        index = result.index
        assert_maps_consistent(index)

        vpc_blocks = [b for b in index.blocks if b.file == module_file]
        assert [b.module_path for b in vpc_blocks] == [("module.vpc",)]
        assert vpc_blocks[0].address == "module.vpc.aws_vpc.main"

        contains = [e for e in index.refs if e.edge_type == "contains"]
        assert [(e.source_address, e.target_address) for e in contains] == [
            ("module.vpc", "module.vpc.aws_vpc.main")
        ]
        assert contains[0].attributes["pattern"] == "last_segment"

    def test_module_cycle_is_not_followed(self, write_tf, tmp_path) -> None:
        write_tf("main.tf", 'module "a" {\n  source = "./a"\n}\n')
        write_tf("a/main.tf", 'module "b" {\n  source = "../b"\n}\n')
        write_tf("b/main.tf", 'module "a" {\n  source = "../a"\n}\n')
        files = find_terraform_files([str(tmp_path)])

        result = build_index(files, BuildOptions(expand_modules=True))
        scopes = {b.module_path for b in result.index.blocks}
        assert scopes == {(), ("module.a",), ("module.a", "module.b")}

    def test_unresolvable_module_is_left_alone(self, write_tf) -> None:
        files = [write_tf("main.tf", 'module "vpc" {\n  source = "terraform-aws-modules/vpc/aws"\n}\n')]
        result = build_index(files, BuildOptions(expand_modules=True))
        assert [b.address for b in result.index.blocks] == ["module.vpc"]


class TestQueries:
    def test_find_blocks(self, write_tf) -> None:
        files = [write_tf("network.tf", NETWORK_TF), write_tf("variables.tf", VARIABLES_TF)]
        index = build_index(files).index

        assert len(find_blocks(index, provider="aws")) == 2
        assert [b.name for b in find_blocks(index, kind="aws_subnet")] == ["public"]
        assert [b.name for b in find_blocks(index, block_kind="variable", name="az")] == ["az"]
        assert len(find_blocks(index, file=files[1])) == 2
        assert find_blocks(index, block_kind="output") == []

    def test_summary(self, write_tf) -> None:
        index = build_index([write_tf("network.tf", NETWORK_TF)]).index
        summary = create_index_summary(index)
        assert "Total blocks: 2" in summary
        assert "  resource: 2" in summary
        assert "  network.tf: 2" in summary
