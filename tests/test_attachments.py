import os

import pytest

import attachments
from attachments import PendingUpload
from schemas import AttachmentRef, TaskValidationError


def test_decode_display_name_repairs_latin1_mojibake() -> None:
    garbled = "报告.pdf".encode("utf-8").decode("latin-1")

    assert attachments.decode_display_name(garbled) == "报告.pdf"
    assert attachments.decode_display_name("café.txt") == "café.txt"
    assert attachments.decode_display_name("C:\\Users\\me\\notes.txt") == "notes.txt"
    assert attachments.decode_display_name("../../etc/passwd") == "passwd"


def test_storage_name_has_time_prefix_and_avoids_collisions(tmp_path) -> None:
    first = attachments.make_storage_name("a.txt", tmp_path, now_ms=1000)
    (tmp_path / first).write_bytes(b"x")
    second = attachments.make_storage_name("a.txt", tmp_path, now_ms=1000)

    assert first == "1000-a.txt"
    assert second == "1001-a.txt"
    assert attachments.make_storage_name('we/ird:"name".txt', tmp_path, now_ms=5) == "5-we_ird__name_.txt"


def test_display_name_recovered_from_storage_name() -> None:
    assert attachments.display_name_from_storage("1700000000000-report-final.pdf") == "report-final.pdf"
    assert attachments.display_name_from_storage("no-prefix.txt") == "no-prefix.txt"


def test_attachment_url_is_quoted() -> None:
    ref = AttachmentRef(display_name="a b.txt", storage_name="1-a b.txt")

    assert attachments.attachment_url(ref) == "/api/files/1-a%20b.txt"


def test_too_many_uploads_rejected(settings) -> None:
    uploads = [PendingUpload(f"{i}.txt", "text/plain", b"x") for i in range(6)]

    with pytest.raises(TaskValidationError, match="5"):
        attachments.validate_uploads(uploads, settings)


@pytest.mark.parametrize(
    "upload, message",
    [
        (PendingUpload("run.exe", "application/octet-stream", b"MZ"), "不支持的文件类型"),
        (PendingUpload("page.txt", "text/html", b"<html>"), "不支持的文件类型"),
        (PendingUpload("README", "text/plain", b"x"), "不支持的文件类型"),
    ],
)
def test_disallowed_types_rejected(settings, upload, message) -> None:
    with pytest.raises(TaskValidationError, match=message):
        attachments.validate_upload(upload, settings)


def test_oversized_upload_rejected(settings) -> None:
    upload = PendingUpload("big.txt", "text/plain", b"x" * (settings.max_attachment_bytes + 1))

    with pytest.raises(TaskValidationError, match="文件过大"):
        attachments.validate_upload(upload, settings)


def test_generic_mime_type_allowed_when_extension_is(settings) -> None:
    attachments.validate_upload(PendingUpload("a.pdf", "application/octet-stream", b"%PDF"), settings)
    attachments.validate_upload(PendingUpload("a.pdf", None, b"%PDF"), settings)
    attachments.validate_upload(PendingUpload("a.txt", "text/plain; charset=utf-8", b"x"), settings)


def test_list_and_resolve(settings) -> None:
    refs = attachments.save_attachments(
        [PendingUpload("one.txt", "text/plain", b"1"), PendingUpload("two.txt", "text/plain", b"22")],
        settings,
    )
    os.utime(settings.upload_dir / refs[0].storage_name, (1, 1))

    listed = attachments.list_attachments(settings)

    assert [r.display_name for r in listed] == ["two.txt", "one.txt"]
    assert [r.size_bytes for r in listed] == [2, 1]
    assert attachments.resolve_attachment(refs[1].storage_name, settings) == settings.upload_dir / refs[1].storage_name


@pytest.mark.parametrize("name", ["", "..", ".hidden", "../inbox.md", "a/b.txt", "a\\b.txt", "missing.txt"])
def test_resolve_rejects_unknown_or_unsafe_names(settings, name) -> None:
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    (settings.upload_dir / ".hidden").write_bytes(b"x")

    assert attachments.resolve_attachment(name, settings) is None


def test_list_attachments_without_upload_dir(settings) -> None:
    assert attachments.list_attachments(settings) == []
