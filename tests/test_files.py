from tfnav.indexer.files import effective_ignore_patterns, find_terraform_files, read_text


def _touch(root, relative: str) -> str:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("")
    return str(path)


def test_discovery_skips_cache_and_vcs(tmp_path) -> None:
    expected = [_touch(tmp_path, "main.tf"), _touch(tmp_path, "modules/vpc/main.tf.json")]
    _touch(tmp_path, ".terraform/modules/x/main.tf")
    _touch(tmp_path, ".git/hooks/bad.tf")
    _touch(tmp_path, "notes.txt")

    assert find_terraform_files([str(tmp_path)]) == sorted(expected)


def test_include_terraform_cache(tmp_path) -> None:
    cached = _touch(tmp_path, ".terraform/modules/x/main.tf")
    files = find_terraform_files([str(tmp_path)], include_terraform_cache=True)
    assert cached in files


def test_custom_ignore_patterns(tmp_path) -> None:
    kept = _touch(tmp_path, "main.tf")
    _touch(tmp_path, "examples/demo/main.tf")
    _touch(tmp_path, "override.tf")

    files = find_terraform_files([str(tmp_path)], ["examples/**", "override.tf"])
    assert files == [kept]


def test_overlapping_roots_are_deduplicated(tmp_path) -> None:
    path = _touch(tmp_path, "sub/main.tf")
    assert find_terraform_files([str(tmp_path), str(tmp_path / "sub")]) == [path]


def test_missing_root_is_skipped(tmp_path) -> None:
    assert find_terraform_files([str(tmp_path / "missing")]) == []


def test_effective_ignore_patterns() -> None:
    assert "**/.terraform/**" in effective_ignore_patterns([])
    assert effective_ignore_patterns(["**/.terraform/**", "x/**"], True) == ["x/**"]


def test_read_text_preserves_line_endings(tmp_path) -> None:
    path = tmp_path / "crlf.tf"
    path.write_bytes(b'variable "a" {}\r\n')
    assert read_text(str(path)) == 'variable "a" {}\r\n'
