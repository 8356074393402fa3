import pytest

from conftest import make_jpeg, make_png
from docvault.embedding import EmbeddedImageService
from docvault.errors import TempFileNotFound, UnsupportedSignatureOrPhotoFormat


@pytest.fixture
def images(promoter):
    return EmbeddedImageService(promoter, "uploads/cvs", "uploads/signatures")


def test_photo_keeps_aspect_ratio(images, promoter):
    upload = promoter.write_temp("owner-1", make_png(300, 400), "me.png", "image/png")
    path = images.promote_photo("owner-1", upload.path)

    descriptor = images.photo_image(path)

    assert path.startswith("/uploads/cvs/")
    assert (descriptor.width, descriptor.height) == (3.0, 4.0)
    assert descriptor.extension == ".png"


def test_signature_keeps_aspect_ratio(images, promoter):
    upload = promoter.write_temp("owner-1", make_jpeg(400, 100), "sig.jpeg", "image/jpeg")
    path = images.promote_signature("owner-1", upload.path)

    descriptor = images.signature_image(path)

    assert path.startswith("/uploads/signatures/")
    assert (descriptor.width, descriptor.height) == (8.0, 2.0)
    assert descriptor.extension == ".jpg"


def test_corrupt_image_renders_square(images, store):
    path = store.write("uploads/cvs", "owner-1", b"\x89PNG broken", ".png")

    descriptor = images.photo_image(path)

    assert (descriptor.width, descriptor.height) == (3.0, 3.0)
    assert descriptor.data == b"\x89PNG broken"


def test_very_tall_photo_is_clamped(images, store):
    path = store.write("uploads/cvs", "owner-1", make_png(10, 1000), ".png")
    assert images.photo_image(path).height == 30.0


@pytest.mark.parametrize(
    "path",
    [None, "", "/uploads/signatures/missing.png", "/uploads/cvs/other.png", "/uploads/signatures/../cvs/x.png"],
)
def test_unresolvable_signature_returns_none(images, path):
    assert images.signature_image(path) is None


def test_gif_signature_is_rejected(images, promoter, store):
    upload = promoter.write_temp("owner-1", b"GIF89a", "sig.gif", "image/gif")

    with pytest.raises(UnsupportedSignatureOrPhotoFormat):
        images.promote_signature("owner-1", upload.path)
    assert store.absolute_path(upload.path).exists()


def test_promote_missing_photo(images):
    with pytest.raises(TempFileNotFound):
        images.promote_photo("owner-1", "/uploads/temp/gone.jpg")
