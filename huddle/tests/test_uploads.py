import cloudinary.uploader
import pytest

from huddle.errors import TooLarge, UnsupportedType
from huddle.uploads import MediaHostError, UploadGateway, media_kind_from_mime


@pytest.mark.parametrize(
    "mime,kind",
    [
        ("image/png", "image"),
        ("IMAGE/JPEG", "image"),
        ("video/mp4", "video"),
        ("audio/mpeg", ""),
        ("application/pdf", ""),
        ("", ""),
        (None, ""),
    ],
)
def test_media_kind_from_mime(mime, kind):
    assert media_kind_from_mime(mime) == kind


def test_store_uploads_to_cloudinary_and_returns_reference(monkeypatch):
    calls = []

    def fake_upload(data, **kwargs):
        calls.append((data, kwargs))
        return {"secure_url": "https://res.cloudinary.com/demo/image/upload/v1/cat.png"}

    monkeypatch.setattr(cloudinary.uploader, "upload", fake_upload)

    ref = UploadGateway().store(b"\x89PNG", "image/png", "cat.png")

    assert ref.to_dict() == {
        "url": "https://res.cloudinary.com/demo/image/upload/v1/cat.png",
        "kind": "image",
        "contentType": "image/png",
        "originalFilename": "cat.png",
    }
    assert calls[0][1]["resource_type"] == "image"


def test_unsupported_type_is_rejected_before_upload(monkeypatch):
    monkeypatch.setattr(cloudinary.uploader, "upload", lambda *a, **k: pytest.fail("uploaded"))

    with pytest.raises(UnsupportedType):
        UploadGateway().store(b"%PDF", "application/pdf", "doc.pdf")


def test_too_large_is_rejected_before_upload(monkeypatch):
    monkeypatch.setattr(cloudinary.uploader, "upload", lambda *a, **k: pytest.fail("uploaded"))
    gateway = UploadGateway(max_upload_mb=1)

    with pytest.raises(TooLarge) as err:
        gateway.store(b"x" * (1024 * 1024 + 1), "video/mp4", "big.mp4")

    assert err.value.status_code == 413


def test_default_limit_is_50_mib():
    assert UploadGateway().max_upload_bytes == 50 * 1024 * 1024


def test_host_failure_is_wrapped(monkeypatch):
    def boom(*_args, **_kwargs):
        raise RuntimeError("network down")

    monkeypatch.setattr(cloudinary.uploader, "upload", boom)

    with pytest.raises(MediaHostError, match="network down"):
        UploadGateway().store(b"frame", "video/webm", "clip.webm")
