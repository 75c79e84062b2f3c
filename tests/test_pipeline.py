import pytest

from chatsync.core.blob_store import guess_content_type, message_type_for_mime
from chatsync.core.errors import BlobStoreError, Forbidden, InvalidRequest, NotFound, StoreError

from helpers import PNG


@pytest.mark.asyncio
async def test_send_runs_trailing_steps(engine, users, store):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    await engine.typing.start_typing(cid, "alice")

    mid = await engine.pipeline.send_message(cid, "alice", "  Hello  ")

    message = await store.table("messages").eq("id", mid).first()
    assert message["content"] == "Hello"
    conv = await store.table("conversations").eq("id", cid).first()
    assert conv["last_message_at"] == message["created_at"]
    receipt = await store.table("message_read_receipts").eq("message_id", mid).first()
    assert receipt["user_id"] == "alice"
    assert receipt["read_at"] is not None
    assert await store.table("typing_indicators").count() == 0
    assert not engine.typing.is_typing(cid, "alice")


@pytest.mark.asyncio
async def test_invalid_send_touches_nothing(engine, users, store):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    with pytest.raises(InvalidRequest):
        await engine.pipeline.send_message(cid, "alice", "   ")
    with pytest.raises(InvalidRequest):
        await engine.pipeline.send_message(cid, "alice", "x", message_type="sticker")
    with pytest.raises(InvalidRequest):
        await engine.pipeline.send_message("", "alice", "x")
    assert await store.table("messages").count() == 0


@pytest.mark.asyncio
async def test_trailing_failures_do_not_fail_the_send(engine, users, store, monkeypatch):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")

    async def broken_upsert(*args, **kwargs):
        raise StoreError("receipts table locked")

    monkeypatch.setattr(store, "upsert", broken_upsert)

    mid = await engine.pipeline.send_message(cid, "alice", "still sent")

    assert await store.table("messages").eq("id", mid).count() == 1
    assert await store.table("message_read_receipts").count() == 0

    monkeypatch.undo()
    repaired = await engine.pipeline.reconcile(cid)
    assert repaired["receipts"] == 1
    assert await engine.pipeline.reconcile(cid) == {"receipts": 0, "attachments": 0, "last_message_at": 0}


@pytest.mark.asyncio
async def test_reconcile_fixes_last_activity(engine, users, store):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    await engine.pipeline.send_message(cid, "alice", "hi")
    await store.update("conversations", {"last_message_at": None}).eq("id", cid).execute()

    result = await engine.pipeline.reconcile(cid)

    assert result["last_message_at"] == 1
    conv = await store.table("conversations").eq("id", cid).first()
    assert conv["last_message_at"] is not None


@pytest.mark.asyncio
async def test_soft_delete_keeps_attachments_and_reactions(engine, users, store):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    mid = await engine.pipeline.upload_and_send(cid, "alice", PNG, "cat.png", "image/png")
    await engine.pipeline.add_reaction(mid, "bob", "❤️")

    row = await engine.pipeline.delete_message(mid)

    assert row["is_deleted"] is True
    assert row["content"] is None
    assert row["deleted_at"] is not None
    assert await store.table("messages").eq("id", mid).count() == 1
    assert await store.table("message_attachments").eq("message_id", mid).count() == 1
    assert await store.table("message_reactions").eq("message_id", mid).count() == 1


@pytest.mark.asyncio
async def test_only_the_sender_may_edit_or_delete(engine, users):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    mid = await engine.pipeline.send_message(cid, "alice", "mine")

    with pytest.raises(Forbidden):
        await engine.pipeline.edit_message(mid, "yours", user_id="bob")
    with pytest.raises(Forbidden):
        await engine.pipeline.delete_message(mid, user_id="bob")
    with pytest.raises(NotFound):
        await engine.pipeline.edit_message("missing", "x")

    await engine.pipeline.delete_message(mid, user_id="alice")
    with pytest.raises(InvalidRequest):
        await engine.pipeline.edit_message(mid, "back", user_id="alice")


@pytest.mark.asyncio
async def test_clear_history(engine, users, store):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    await engine.pipeline.upload_and_send(cid, "alice", PNG, "cat.png")
    await engine.pipeline.send_message(cid, "bob", "nice")

    cleared = await engine.pipeline.clear_history(cid)

    assert cleared == 2
    assert await store.table("message_attachments").count() == 0
    assert await store.table("messages").eq("is_deleted", False).count() == 0
    assert await store.table("messages").count() == 2
    [view] = await engine.aggregator.load_conversations("bob")
    assert view.preview == "No messages"
    assert view.unread_count == 0


@pytest.mark.asyncio
async def test_png_upload_becomes_image_message(engine, users, store, blob, test_settings):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")

    mid = await engine.pipeline.upload_and_send(cid, "alice", PNG, "cat.png", "image/png")

    message = await store.table("messages").eq("id", mid).first()
    assert message["message_type"] == "image"
    assert message["content"].startswith(f"https://files.test/{test_settings.STORAGE_BUCKET}/alice/")
    assert message["metadata"] == {"fileName": "cat.png", "fileSize": len(PNG), "fileType": "image/png"}
    attachment = await store.table("message_attachments").eq("message_id", mid).first()
    assert attachment["file_url"] == message["content"]
    assert attachment["file_size"] == len(PNG)
    [(bucket, path)] = list(blob.objects)
    assert bucket == test_settings.STORAGE_BUCKET
    assert path.endswith(".png")


@pytest.mark.asyncio
async def test_blob_failure_creates_no_message(engine, users, store, blob):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    blob.fail = True

    with pytest.raises(BlobStoreError):
        await engine.pipeline.upload_and_send(cid, "alice", PNG, "cat.png", "image/png")
    assert await store.table("messages").count() == 0


@pytest.mark.asyncio
async def test_upload_limits(engine, users):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    with pytest.raises(InvalidRequest):
        await engine.pipeline.upload_and_send(cid, "alice", b"", "empty.txt")
    with pytest.raises(InvalidRequest):
        await engine.pipeline.upload_and_send(cid, "alice", b"x" * 2048, "big.bin")


def test_mime_mapping():
    assert message_type_for_mime("audio/mpeg") == "voice"
    assert message_type_for_mime("video/mp4") == "video"
    assert message_type_for_mime("image/png") == "image"
    assert message_type_for_mime("application/pdf") == "file"
    assert message_type_for_mime(None) == "file"
    assert guess_content_type("voice.mp3") == "audio/mpeg"
    assert guess_content_type("x.bin", "application/octet-stream") == "application/octet-stream"


@pytest.mark.asyncio
async def test_reactions_are_idempotent(engine, users, store):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    mid = await engine.pipeline.send_message(cid, "alice", "react to me")

    await engine.pipeline.add_reaction(mid, "bob", "👍")
    await engine.pipeline.add_reaction(mid, "bob", "👍")
    assert await store.table("message_reactions").count() == 1

    assert await engine.pipeline.remove_reaction(mid, "bob", "👍") is True
    assert await engine.pipeline.remove_reaction(mid, "bob", "👍") is False


@pytest.mark.asyncio
async def test_content_decides_the_message_type(engine, users, store):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")

    renamed_text = await engine.pipeline.upload_and_send(
        cid, "alice", b"just some notes\n" * 4, "holiday.png", "image/png"
    )
    disguised_png = await engine.pipeline.upload_and_send(
        cid, "alice", PNG, "report.pdf", "application/pdf"
    )

    text_message = await store.table("messages").eq("id", renamed_text).first()
    assert text_message["message_type"] == "file"
    assert text_message["metadata"]["fileType"] == "text/plain"
    png_message = await store.table("messages").eq("id", disguised_png).first()
    assert png_message["message_type"] == "image"
    assert png_message["metadata"]["fileType"] == "image/png"


def test_sniffed_type_wins_over_declared():
    assert guess_content_type("cat.png", "application/pdf", PNG) == "image/png"
    assert guess_content_type("notes.png", "image/png", b"hello there\n") == "text/plain"
    assert guess_content_type("cat.png", None, None) == "image/png"


@pytest.mark.asyncio
async def test_attachment_failure_keeps_the_message(engine, users, store, monkeypatch):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    real_insert = store.insert

    async def insert(table, rows):
        if table == "message_attachments":
            raise StoreError("attachments table locked")
        return await real_insert(table, rows)

    monkeypatch.setattr(store, "insert", insert)
    mid = await engine.pipeline.upload_and_send(cid, "alice", PNG, "cat.png", "image/png")

    assert await store.table("messages").eq("id", mid).count() == 1
    assert await store.table("message_attachments").count() == 0

    monkeypatch.undo()
    repaired = await engine.pipeline.reconcile(cid)
    assert repaired["attachments"] == 1
    attachment = await store.table("message_attachments").eq("message_id", mid).first()
    assert attachment["file_name"] == "cat.png"
    assert attachment["file_type"] == "image/png"
    assert attachment["file_size"] == len(PNG)
    assert (await engine.pipeline.reconcile(cid))["attachments"] == 0
