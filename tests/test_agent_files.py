import pytest

from remibot.agent_files import (
    UnsafeFilenameError,
    is_safe_filename,
    read_agent_file,
    write_agent_file,
)


@pytest.mark.parametrize("name", ["soul.md", "notes_2024-01.txt", "a", "README"])
def test_safe_names(name):
    assert is_safe_filename(name) is True


@pytest.mark.parametrize(
    "name",
    ["", ".hidden", "../soul.md", "dir/file", "dir\\file", "a b", "名字.md", "a:b"],
)
def test_unsafe_names(name):
    assert is_safe_filename(name) is False


def test_round_trip(tmp_path):
    write_agent_file(tmp_path, "soul.md", "hello ✨\nworld")
    assert read_agent_file(tmp_path, "soul.md") == "hello ✨\nworld"


def test_overwrite_replaces_content(tmp_path):
    write_agent_file(tmp_path, "soul.md", "first version")
    write_agent_file(tmp_path, "soul.md", "second")
    assert read_agent_file(tmp_path, "soul.md") == "second"


def test_missing_file_reads_empty(tmp_path):
    assert read_agent_file(tmp_path, "absent.md") == ""


def test_write_creates_data_dir(tmp_path):
    data_dir = tmp_path / "nested" / "data"
    write_agent_file(data_dir, "soul.md", "x")
    assert (data_dir / "soul.md").read_text() == "x"


def test_read_rejects_unsafe_name(tmp_path):
    with pytest.raises(UnsafeFilenameError):
        read_agent_file(tmp_path, "../etc")


def test_write_rejects_unsafe_name(tmp_path):
    with pytest.raises(UnsafeFilenameError):
        write_agent_file(tmp_path, ".env", "data")
    assert not (tmp_path / ".env").exists()


def test_unsafe_error_is_value_error(tmp_path):
    with pytest.raises(ValueError, match="invalid filename"):
        read_agent_file(tmp_path, "")


def test_read_directory_raises_os_error(tmp_path):
    (tmp_path / "memory").mkdir()
    with pytest.raises(OSError):
        read_agent_file(tmp_path, "memory")