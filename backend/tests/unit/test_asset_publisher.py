from unittest.mock import MagicMock

import pytest

from app.services.asset_publisher import PUBLIC_BUCKET, SOURCE_BUCKET, AssetPublisher, ensure_bucket_exists
from app.services.editorial_service import StatusChange


def _change(to_status: str) -> StatusChange:
    return StatusChange(
        manuscript_id="ms-1",
        from_status="ACCEPTED",
        to_status=to_status,
        changed_by="editor",
        comment=None,
        created_at="2026-03-01T00:00:00+00:00",
    )


def _storage_client() -> tuple[MagicMock, dict[str, MagicMock]]:
    client = MagicMock()
    buckets = {SOURCE_BUCKET: MagicMock(), PUBLIC_BUCKET: MagicMock()}
    buckets[SOURCE_BUCKET].download.return_value = b"%PDF"
    client.storage.from_.side_effect = lambda name: buckets[name]
    return client, buckets


@pytest.mark.asyncio
async def test_publish_copies_files_to_public_bucket(repo) -> None:
    repo.add_file("ms-1", path="ms-1/v1.pdf", filename="paper.pdf", mime_type="application/pdf")
    repo.add_file("ms-1", path=None, filename="placeholder")
    client, buckets = _storage_client()

    await AssetPublisher(repo, client=client).on_status_change(_change("PUBLISHED"))

    buckets[SOURCE_BUCKET].download.assert_called_once_with("ms-1/v1.pdf")
    path, content, opts = buckets[PUBLIC_BUCKET].upload.call_args.args
    assert path == "ms-1/paper.pdf"
    assert content == b"%PDF"
    assert opts["content-type"] == "application/pdf"


@pytest.mark.asyncio
async def test_retraction_removes_public_files(repo) -> None:
    repo.add_file("ms-1", path="ms-1/v1.pdf", filename="paper.pdf")
    client, buckets = _storage_client()

    await AssetPublisher(repo, client=client).on_status_change(_change("RETRACTED"))

    buckets[PUBLIC_BUCKET].remove.assert_called_once_with(["ms-1/paper.pdf"])


@pytest.mark.asyncio
async def test_other_statuses_do_not_touch_storage(repo) -> None:
    client, _ = _storage_client()
    await AssetPublisher(repo, client=client).on_status_change(_change("ACCEPTED"))
    client.storage.from_.assert_not_called()


def test_ensure_bucket_tolerates_concurrent_creation() -> None:
    client = MagicMock()
    client.storage.get_bucket.side_effect = RuntimeError("not found")
    client.storage.create_bucket.side_effect = RuntimeError("Bucket already exists")

    ensure_bucket_exists(client, bucket=PUBLIC_BUCKET, public=True)

    client.storage.create_bucket.assert_called_once_with(PUBLIC_BUCKET, options={"public": True})


def test_ensure_bucket_propagates_other_errors() -> None:
    client = MagicMock()
    client.storage.get_bucket.side_effect = RuntimeError("not found")
    client.storage.create_bucket.side_effect = RuntimeError("permission denied")

    with pytest.raises(RuntimeError):
        ensure_bucket_exists(client, bucket=PUBLIC_BUCKET)
