import io

import pytest
from fastapi import HTTPException, UploadFile

import storage


def upload(name, payload=b"data"):
    return UploadFile(file=io.BytesIO(payload), filename=name)


def test_save_upload_writes_under_category(upload_dir):
    stored = storage.save_upload(upload("Unit 1.PDF", b"%PDF"), "notes")
    assert stored.path.startswith("notes/")
    assert stored.path.endswith(".pdf")
    assert stored.url.endswith("/uploads/" + stored.path)
    assert stored.file_type == "pdf"
    assert stored.size == 4
    assert (upload_dir / stored.path).read_bytes() == b"%PDF"


def test_rejects_disallowed_extension(upload_dir):
    with pytest.raises(HTTPException) as err:
        storage.save_upload(upload("clip.mp4"), "notes")
    assert err.value.status_code == 400


def test_rejects_oversized_file_and_leaves_nothing_behind(upload_dir, monkeypatch):
    monkeypatch.setitem(storage.CATEGORY_RULES, "misc", ({".png"}, 10))
    with pytest.raises(HTTPException) as err:
        storage.save_upload(upload("big.png", b"x" * 11), "misc")
    assert err.value.status_code == 413
    assert list((upload_dir / "misc").iterdir()) == []


def test_delete_is_idempotent(upload_dir):
    stored = storage.save_upload(upload("a.txt"), "notes")
    assert storage.delete_file(stored.path) is True
    assert storage.delete_file(stored.path) is False
    assert storage.delete_file(None) is False


def test_attachment_shape():
    stored = storage.StoredFile(path="misc/x.png", url="http://h/uploads/misc/x.png", original_name="photo.png", size=3)
    assert stored.attachment() == {
        "file_url": "http://h/uploads/misc/x.png",
        "file_path": "misc/x.png",
        "file_type": "png",
        "file_name": "photo.png",
        "file_size": 3,
    }
