import zipfile

import pytest

from slack_export_viewer.archive import ExportArchive
from slack_export_viewer.errors import EntryParseError, MalformedArchive


def test_root_prefix_for_wrapped_export(make_export):
    path = make_export(root="My Export/", days={"general/2024-01-01.json": []})

    with ExportArchive.open(path) as archive:
        assert archive.root == "My Export/"
        assert archive.users_path == "My Export/users.json"
        assert archive.channels_path == "My Export/channels.json"
        assert list(archive.iter_message_entries()) == [
            ("general", "My Export/general/2024-01-01.json")
        ]


def test_root_prefix_empty_for_flat_export(make_export):
    with ExportArchive.open(make_export()) as archive:
        assert archive.root == ""
        assert archive.read_required_array(archive.users_path)[0]["id"] == "U1"


def test_missing_users_json_is_malformed(make_export):
    path = make_export(skip=("users.json",))
    with pytest.raises(MalformedArchive, match="users.json"):
        ExportArchive.open(path)


def test_missing_channels_json_is_malformed(make_export):
    path = make_export(skip=("channels.json",))
    with pytest.raises(MalformedArchive, match="channels.json"):
        ExportArchive.open(path)


def test_channels_json_must_sit_next_to_users_json(tmp_path):
    path = tmp_path / "split.zip"
    with zipfile.ZipFile(path, "w") as handle:
        handle.writestr("a/users.json", "[]")
        handle.writestr("b/channels.json", "[]")
    with pytest.raises(MalformedArchive):
        ExportArchive.open(path)


def test_not_a_zip_is_malformed(tmp_path):
    path = tmp_path / "export.zip"
    path.write_bytes(b"definitely not a zip")
    with pytest.raises(MalformedArchive):
        ExportArchive.open(path)
    with pytest.raises(MalformedArchive):
        ExportArchive.open(b"also not a zip")


def test_open_from_bytes(make_export):
    data = make_export().read_bytes()
    with ExportArchive.open(data) as archive:
        assert archive.channels_path == "channels.json"


def test_invalid_required_json_is_malformed(make_export):
    path = make_export(skip=("users.json",), raw={"users.json": "{not json"})
    with ExportArchive.open(path) as archive:
        with pytest.raises(MalformedArchive, match="Invalid JSON"):
            archive.read_required_array(archive.users_path)


def test_required_file_must_be_array(make_export):
    path = make_export(users={"id": "U1"})
    with ExportArchive.open(path) as archive:
        with pytest.raises(MalformedArchive, match="array"):
            archive.read_required_array(archive.users_path)


def test_only_two_segment_json_entries_are_message_files(make_export):
    path = make_export(
        root="export/",
        days={
            "general/2024-01-01.json": [],
            "general/nested/2024-01-02.json": [],
            "random/2024-01-03.json": [],
        },
        raw={
            "general/notes.txt": "x",
            "integration_logs.json": "[]",
            "general\\2024-01-04.json": "[]",
        },
    )

    with ExportArchive.open(path) as archive:
        entries = sorted(archive.iter_message_entries())

    assert entries == [
        ("general", "export/general/2024-01-01.json"),
        ("general", "export/general\\2024-01-04.json"),
        ("random", "export/random/2024-01-03.json"),
    ]


def test_entry_parse_errors_are_per_entry(make_export):
    path = make_export(raw={"general/bad.json": "[{", "general/obj.json": '{"ts": "1"}'})
    with ExportArchive.open(path) as archive:
        with pytest.raises(EntryParseError) as excinfo:
            archive.read_entry_array("general/bad.json")
        assert excinfo.value.path == "general/bad.json"
        with pytest.raises(EntryParseError, match="array"):
            archive.read_entry_array("general/obj.json")
