from tfnav.graph.refs import (
    ReferenceExtractor,
    get_edges_for_address,
    get_neighbors,
    get_neighbors_with_depth,
)
from tfnav.indexer.models import Block, ByteRange, ProjectIndex

from conftest import index_of, parse_blocks


def _edges(index):
    return [(e.source_address, e.target_address, e.edge_type, e.reference_type) for e in index.refs]


class TestResourceReferences:
    def test_subnet_references_vpc(self, write_tf) -> None:
        path = write_tf(
            "main.tf",
            'resource "aws_vpc" "main" {\n  cidr_block = "10.0.0.0/16"\n}\n\n'
            'resource "aws_subnet" "public" {\n  vpc_id = aws_vpc.main.id\n}\n',
        )
        index = index_of(parse_blocks(path))
        assert _edges(index) == [("aws_subnet.public", "aws_vpc.main", "reference", "resource")]

        edge = index.refs[0]
        assert edge.attributes == {
            "referenceType": "resource",
            "attribute": "resource",
            "pattern": "resource",
        }

    def test_repeated_references_are_deduplicated(self, write_tf) -> None:
        path = write_tf(
            "main.tf",
            'resource "aws_vpc" "main" {}\n\n'
            'resource "aws_subnet" "public" {\n'
            "  vpc_id = aws_vpc.main.id\n"
            "  cidr   = aws_vpc.main.cidr_block\n"
            "}\n",
        )
        index = index_of(parse_blocks(path))
        assert len(index.refs) == 1

    def test_self_reference_is_ignored(self, write_tf) -> None:
        path = write_tf(
            "main.tf",
            'resource "aws_instance" "web" {\n  tags = { Name = aws_instance.web.id }\n}\n',
        )
        assert index_of(parse_blocks(path)).refs == []

    def test_unknown_targets_produce_no_edges(self, write_tf) -> None:
        path = write_tf(
            "main.tf",
            'resource "aws_instance" "web" {\n'
            "  subnet_id = aws_subnet.missing.id\n"
            "  ami       = var.missing\n"
            "}\n",
        )
        assert index_of(parse_blocks(path)).refs == []


class TestOtherReferenceKinds:
    def test_variable_data_and_local(self, write_tf) -> None:
        path = write_tf(
            "main.tf",
            'variable "size" {}\n\n'
            'data "aws_ami" "ubuntu" {}\n\n'
            "locals {\n  env = \"dev\"\n}\n\n"
            'resource "aws_instance" "web" {\n'
            "  instance_type = var.size\n"
            "  ami           = data.aws_ami.ubuntu.id\n"
            "  tags          = { Env = local.env }\n"
            "}\n",
        )
        index = index_of(parse_blocks(path))
        assert sorted(_edges(index)) == [
            ("aws_instance.web", "data.aws_ami.ubuntu", "reference", "data"),
            ("aws_instance.web", "local", "reference", "local"),
            ("aws_instance.web", "var.size", "reference", "var"),
        ]

    def test_resource_references_module_output(self, write_tf) -> None:
        path = write_tf(
            "main.tf",
            'module "vpc" {\n  source = "terraform-aws-modules/vpc/aws"\n}\n\n'
            'resource "aws_instance" "web" {\n  subnet_id = module.vpc.private_subnets[0]\n}\n',
        )
        index = index_of(parse_blocks(path))
        assert _edges(index) == [("aws_instance.web", "module.vpc", "reference", "module")]
        assert index.refs[0].attributes["attribute"] == "private_subnets"

    def test_variables_and_outputs_are_not_scanned(self, write_tf) -> None:
        path = write_tf(
            "main.tf",
            'resource "aws_vpc" "main" {}\n\n'
            'output "vpc_id" {\n  value = aws_vpc.main.id\n}\n',
        )
        assert index_of(parse_blocks(path)).refs == []


class TestModules:
    def test_module_containment(self, write_tf) -> None:
        root = write_tf("main.tf", 'module "vpc" {\n  source = "./modules/vpc"\n}\n')
        nested = write_tf("modules/vpc/main.tf", 'resource "aws_vpc" "main" {}\n')
        index = index_of(parse_blocks(root) + parse_blocks(nested, ("module.vpc",)))

        assert _edges(index) == [
            ("module.vpc", "module.vpc.aws_vpc.main", "contains", "module_containment")
        ]
        assert index.refs[0].attributes["relationship"] == "contains"

    def test_containment_by_source_directory(self, write_tf) -> None:
        root = write_tf("main.tf", 'module "vpc" {\n  source = "./modules/vpc"\n}\n')
        nested = write_tf("modules/vpc/main.tf", 'resource "aws_vpc" "main" {}\n')
        other = write_tf("modules/dns/main.tf", 'resource "aws_route53_zone" "z" {}\n')
        index = index_of(parse_blocks(root) + parse_blocks(nested) + parse_blocks(other))

        contains = [e for e in index.refs if e.edge_type == "contains"]
        assert [(e.source_address, e.target_address) for e in contains] == [
            ("module.vpc", "aws_vpc.main")
        ]
        assert contains[0].attributes["pattern"] == "source_directory"

    def test_module_to_module_reference(self, write_tf) -> None:
        path = write_tf(
            "main.tf",
            'module "a" {\n  source = "org/a/aws"\n  input = module.b.output_x\n}\n\n'
            'module "b" {\n  source = "org/b/aws"\n}\n',
        )
        index = index_of(parse_blocks(path))
        assert _edges(index) == [("module.a", "module.b", "reference", "module_reference")]
        assert index.refs[0].attributes["attribute"] == "output_x"


class TestScoping:
    def test_variable_resolves_only_in_same_scope(self, write_tf) -> None:
        root = write_tf(
            "main.tf",
            'variable "region" {}\n\n'
            'resource "aws_instance" "web" {\n  availability_zone = var.region\n}\n',
        )
        nested = write_tf("modules/net/variables.tf", 'variable "region" {}\n')
        index = index_of(parse_blocks(root) + parse_blocks(nested, ("module.net",)))

        assert _edges(index) == [("aws_instance.web", "var.region", "reference", "var")]
        assert index.refs[0].target.module_path == ()

    def test_nested_scope_does_not_see_root_variable(self, write_tf) -> None:
        root = write_tf("main.tf", 'variable "region" {}\n')
        nested = write_tf(
            "modules/net/main.tf",
            'resource "aws_subnet" "a" {\n  availability_zone = var.region\n}\n',
        )
        index = index_of(parse_blocks(root) + parse_blocks(nested, ("module.net",)))
        assert index.refs == []


def test_unreadable_file_is_skipped(tmp_path) -> None:
    missing = str(tmp_path / "gone.tf")
    block = Block(
        block_kind="resource",
        file=missing,
        byte_range=ByteRange(0, 10),
        kind="aws_vpc",
        name="main",
    )
    index = ProjectIndex(blocks=[block])
    index.rebuild_maps()
    assert ReferenceExtractor().extract(index) == []


def test_injected_reader() -> None:
    texts = {
        "/w/main.tf": 'resource "a_x" "one" {}\nresource "a_y" "two" { v = a_x.one.id }\n',
    }
    blocks = [
        Block("resource", "/w/main.tf", ByteRange(0, 23), kind="a_x", name="one"),
        Block("resource", "/w/main.tf", ByteRange(24, 63), kind="a_y", name="two"),
    ]
    index = ProjectIndex(blocks=blocks)
    edges = ReferenceExtractor(texts.__getitem__).extract(index)
    assert [e.key for e in edges] == [("a_y.two", "a_x.one")]


class TestGraphQueries:
    def _chain(self, write_tf):
        path = write_tf(
            "main.tf",
            'resource "aws_vpc" "main" {}\n\n'
            'resource "aws_subnet" "public" {\n  vpc_id = aws_vpc.main.id\n}\n\n'
            'resource "aws_instance" "web" {\n  subnet_id = aws_subnet.public.id\n}\n',
        )
        return index_of(parse_blocks(path))

    def test_edges_for_address(self, write_tf) -> None:
        index = self._chain(write_tf)
        incoming, outgoing = get_edges_for_address("aws_subnet.public", index.refs)
        assert [e.source_address for e in incoming] == ["aws_instance.web"]
        assert [e.target_address for e in outgoing] == ["aws_vpc.main"]

    def test_neighbors(self, write_tf) -> None:
        index = self._chain(write_tf)
        names = {b.address for b in get_neighbors("aws_subnet.public", index.refs)}
        assert names == {"aws_instance.web", "aws_vpc.main"}

    def test_neighbors_with_depth(self, write_tf) -> None:
        index = self._chain(write_tf)
        one = {b.address for b in get_neighbors_with_depth("aws_vpc.main", index.refs, 1)}
        two = {b.address for b in get_neighbors_with_depth("aws_vpc.main", index.refs, 2)}
        assert one == {"aws_subnet.public"}
        assert two == {"aws_subnet.public", "aws_instance.web"}
