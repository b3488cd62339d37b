"""Tests for the object-storage sandbox endpoints."""

import time

import pytest

from campus_storage.storage.schemas import ConfirmUploadRequest, CreateUploadRequest, StorageConfig
from campus_storage.storage.service import STORAGE_PREFIX, StorageServiceError


def _create(api_client, filename="note.pdf", size=4, ref_id=1, purpose="LEAVE_ATTACHMENT"):
    return api_client.post(f"{STORAGE_PREFIX}/upload/create", json={
        "bucketPurpose": purpose,
        "originalFilename": filename,
        "businessRefType": "LEAVE_REQUEST",
        "businessRefId": ref_id,
        "expectedSize": size,
    })


def _upload(api_client, content=b"%PDF", filename="note.pdf", ref_id=1, mime="application/pdf"):
    session = _create(api_client, filename=filename, size=len(content), ref_id=ref_id).json()
    put = api_client.put(session["presignedUrl"], content=content, headers={"Content-Type": mime})
    assert put.status_code == 200
    return session["fileObjectId"]


def _confirm(api_client, file_object_id, size=4, mime="application/pdf"):
    return api_client.post(f"{STORAGE_PREFIX}/upload/confirm", json={
        "fileObjectId": file_object_id, "sizeBytes": size, "mimeType": mime,
    })


class TestStorageConfigs:
    """Tests for storage config endpoints."""

    def test_leave_policy_is_seeded(self, api_client):
        configs = api_client.get(f"{STORAGE_PREFIX}/storage-configs").json()
        leave = next(c for c in configs if c["bucketPurpose"] == "LEAVE_ATTACHMENT")
        assert leave["maxFileSize"] == 5 * 1024 * 1024
        assert leave["allowedExtensions"] == ["jpeg", "jpg", "pdf", "png"]
        assert "application/pdf" in leave["allowedMimeTypes"]
        assert leave["enabled"] is True

    def test_save_and_delete(self, api_client):
        resp = api_client.post(f"{STORAGE_PREFIX}/storage-configs", json={
            "bucketPurpose": "DEMO",
            "maxFileSize": 100,
            "allowedExtensions": [".TXT"],
        })
        assert resp.status_code == 200
        assert resp.json()["allowedExtensions"] == ["txt"]
        assert resp.json()["bucketName"] == "demo"

        assert api_client.delete(f"{STORAGE_PREFIX}/storage-configs/DEMO").json()["deleted"] is True
        missing = api_client.delete(f"{STORAGE_PREFIX}/storage-configs/DEMO")
        assert missing.status_code == 404
        assert missing.json()["code"] == "CONFIG_NOT_FOUND"

    def test_invalid_size_rejected(self, api_client):
        resp = api_client.post(f"{STORAGE_PREFIX}/storage-configs", json={
            "bucketPurpose": "DEMO", "maxFileSize": 0,
        })
        assert resp.status_code == 422

    def test_purposes(self, api_client, sandbox):
        sandbox.save_storage_config(StorageConfig(bucket_purpose="CUSTOM"))
        codes = [p["code"] for p in api_client.get(f"{STORAGE_PREFIX}/purposes").json()]
        assert codes[:2] == ["LEAVE_ATTACHMENT", "DEMO"]
        assert "CUSTOM" in codes


class TestUploadLifecycle:
    """Tests for create -> PUT -> confirm."""

    def test_full_upload(self, api_client):
        session = _create(api_client).json()
        assert session["presignedUrl"].startswith("http://testserver/api/object-storage/objects/")
        assert session["expireSeconds"] == 600

        put = api_client.put(session["presignedUrl"], content=b"%PDF")
        assert put.status_code == 200
        assert put.content == b""

        confirmed = _confirm(api_client, session["fileObjectId"], mime="Application/PDF")
        assert confirmed.status_code == 200
        body = confirmed.json()
        assert body["status"] == "ACTIVE"
        assert body["sizeBytes"] == 4
        assert body["mimeType"] == "application/pdf"

    def test_each_create_allocates_new_id(self, api_client):
        first = _create(api_client).json()["fileObjectId"]
        second = _create(api_client).json()["fileObjectId"]
        assert second != first

    def test_create_rejects_large_file(self, api_client):
        resp = _create(api_client, size=6 * 1024 * 1024)
        assert resp.status_code == 400
        assert resp.json()["code"] == "FILE_TOO_LARGE"
        assert resp.json()["message"]

    @pytest.mark.parametrize("filename", ["virus.exe", "README"])
    def test_create_rejects_extension(self, api_client, filename):
        """The server checks extensions strictly, including missing ones."""
        resp = _create(api_client, filename=filename)
        assert resp.status_code == 400
        assert resp.json()["code"] == "EXTENSION_NOT_ALLOWED"

    def test_create_unknown_purpose(self, api_client):
        resp = _create(api_client, purpose="NOPE")
        assert resp.status_code == 404
        assert resp.json()["code"] == "CONFIG_NOT_FOUND"

    def test_tampered_signature(self, api_client):
        url = _create(api_client).json()["presignedUrl"]
        resp = api_client.put(url.replace("signature=", "signature=00"), content=b"%PDF")
        assert resp.status_code == 403
        assert resp.json()["code"] == "SIGNATURE_MISMATCH"

    def test_expired_url(self, sandbox):
        file_object, _, _ = sandbox.create_upload(CreateUploadRequest(
            bucket_purpose="LEAVE_ATTACHMENT",
            original_filename="a.pdf",
            business_ref_type="LEAVE_REQUEST",
            business_ref_id=1,
            expected_size=1,
        ), "http://testserver")
        expires = int(time.time()) - 5
        signature = sandbox._signature("PUT", file_object.id, expires)
        with pytest.raises(StorageServiceError) as exc_info:
            sandbox.verify_signature(file_object.id, "PUT", expires, signature)
        assert exc_info.value.code == "URL_EXPIRED"

    def test_confirm_before_put(self, api_client):
        file_object_id = _create(api_client).json()["fileObjectId"]
        resp = _confirm(api_client, file_object_id)
        assert resp.status_code == 409
        assert resp.json()["code"] == "OBJECT_MISSING"

    def test_confirm_twice_is_invalid_state(self, api_client):
        file_object_id = _upload(api_client)
        assert _confirm(api_client, file_object_id).status_code == 200
        again = _confirm(api_client, file_object_id)
        assert again.status_code == 409
        assert again.json()["code"] == "INVALID_STATE"
        assert "does not allow confirmation" in again.json()["message"]

    def test_confirm_size_mismatch(self, api_client):
        file_object_id = _upload(api_client)
        resp = _confirm(api_client, file_object_id, size=99)
        assert resp.json()["code"] == "SIZE_MISMATCH"

    def test_confirm_mime_not_allowed(self, api_client):
        file_object_id = _upload(api_client)
        resp = _confirm(api_client, file_object_id, mime="text/html")
        assert resp.json()["code"] == "MIME_NOT_ALLOWED"

    def test_confirm_unknown(self, api_client):
        resp = _confirm(api_client, 9999)
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"

    def test_put_after_confirm_rejected(self, sandbox):
        file_object, _, _ = sandbox.create_upload(CreateUploadRequest(
            bucket_purpose="LEAVE_ATTACHMENT",
            original_filename="a.pdf",
            business_ref_type="LEAVE_REQUEST",
            business_ref_id=1,
            expected_size=1,
        ), "http://testserver")
        sandbox.store_object(file_object.id, b"x")
        sandbox.confirm_upload(ConfirmUploadRequest(
            file_object_id=file_object.id, size_bytes=1, mime_type="application/pdf"
        ))
        with pytest.raises(StorageServiceError) as exc_info:
            sandbox.store_object(file_object.id, b"y")
        assert exc_info.value.status_code == 409


class TestBusinessFiles:
    """Tests for listing and downloading committed files."""

    def test_lists_only_confirmed_files(self, api_client):
        confirmed = _upload(api_client, ref_id=5)
        _confirm(api_client, confirmed)
        _upload(api_client, ref_id=5)  # uploaded, never confirmed
        _create(api_client, ref_id=5)  # never uploaded
        other = _upload(api_client, ref_id=6)
        _confirm(api_client, other)

        files = api_client.get(
            f"{STORAGE_PREFIX}/business/LEAVE_REQUEST/5/files",
            params={"bucketPurpose": "LEAVE_ATTACHMENT"},
        ).json()
        assert [f["id"] for f in files] == [confirmed]
        assert files[0]["originalFilename"] == "note.pdf"

    def test_download(self, api_client):
        file_object_id = _upload(api_client, content=b"%PDF-data")
        _confirm(api_client, file_object_id, size=9)
        info = api_client.get(f"{STORAGE_PREFIX}/files/{file_object_id}/download-info").json()
        assert info["expireSeconds"] == 600
        resp = api_client.get(info["downloadUrl"])
        assert resp.status_code == 200
        assert resp.content == b"%PDF-data"

    def test_download_info_unknown(self, api_client):
        resp = api_client.get(f"{STORAGE_PREFIX}/files/424242/download-info")
        assert resp.status_code == 404

    def test_health(self, api_client):
        assert api_client.get("/health").json() == {"status": "ok"}
