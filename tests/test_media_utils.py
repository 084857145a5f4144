from mediahub.media_utils import detect_image_type, extension_for, is_safe_file_path, sniff_image_type


def test_sniff_signatures(make_image):
    assert sniff_image_type(make_image(10, 10, "JPEG")) == "image/jpeg"
    assert sniff_image_type(make_image(10, 10, "PNG")) == "image/png"
    assert sniff_image_type(make_image(10, 10, "GIF")) == "image/gif"
    assert sniff_image_type(make_image(10, 10, "BMP")) == "image/bmp"
    assert sniff_image_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
    assert sniff_image_type(b"hello") is None


def test_detect_falls_back_to_extension_with_low_confidence():
    detected = detect_image_type(b"garbage bytes here", "photo.JPG")
    assert detected.mime_type == "image/jpeg"
    assert detected.confidence == "low"

    assert detect_image_type(b"garbage bytes here", "notes.txt").valid is False


def test_detect_prefers_signature(make_image):
    detected = detect_image_type(make_image(10, 10, "PNG"), "misnamed.jpg")
    assert detected.mime_type == "image/png"
    assert detected.confidence == "high"


def test_extension_for():
    assert extension_for("image/jpeg") == "jpg"
    assert extension_for("image/png") == "png"


def test_safe_file_path():
    assert is_safe_file_path("abc123.jpg")
    assert not is_safe_file_path("../secret")
    assert not is_safe_file_path("a/b.jpg")
    assert not is_safe_file_path("a\\b.jpg")
    assert not is_safe_file_path("")
