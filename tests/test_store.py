"""Tests for the MailStore facade."""

from datetime import datetime, timedelta, timezone

from mailsync.models import CacheData, Envelope, MailboxRef
from mailsync.storage import maildir, pathenc

REF = MailboxRef("user@example.com", "[Gmail]/Sent Mail")


def add_message(store, ref, uid, data=b"raw", date=None):
    store.prepare(ref)
    key, writer = maildir.create(store.maildir_path(ref))
    writer.write(data)
    writer.close()
    store.index(ref).append(CacheData(envelope=Envelope(date=date, subject=str(uid)), uid=uid, filename=key))
    return key


def test_layout(store):
    account = pathenc.encode("user@example.com")
    mailbox = pathenc.encode("[Gmail]/Sent Mail")
    assert store.maildir_path(REF) == store.data_dir / "mail" / account / mailbox
    assert store.cache_path(REF) == store.data_dir / "caching" / account / mailbox / "cached-messages.json"
    assert store.state_path(REF).name == "mailbox-state.json"
    assert store.token_path("user@example.com", "google") == (
        store.data_dir / "auth" / account / "google-token.json"
    )


def test_prepare_creates_directories(store):
    store.prepare(REF)
    for sub in ("tmp", "new", "cur"):
        assert (store.maildir_path(REF) / sub).is_dir()
    assert store.cache_dir(REF).is_dir()


def test_index_is_shared(store):
    assert store.index(REF) is store.index(REF)


def test_read_message(store):
    add_message(store, REF, 12, b"Subject: x\r\n\r\nhello\r\n")
    assert store.read_message(REF, 12) == b"Subject: x\r\n\r\nhello\r\n"
    assert store.read_message(REF, 99) is None


def test_read_message_with_missing_file_returns_none(store):
    key = add_message(store, REF, 12)
    maildir.delete(store.maildir_path(REF), key)
    assert store.read_message(REF, 12) is None


def test_snapshot_never_raises(store):
    store.cache_path(REF).mkdir(parents=True)
    assert store.snapshot(REF) == []
    assert store.mailbox_index(REF) == []


def test_mailbox_index_is_newest_first(store):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    add_message(store, REF, 1, date=base)
    add_message(store, REF, 2, date=None)
    add_message(store, REF, 3, date=base + timedelta(days=2))
    add_message(store, REF, 4, date=datetime(2024, 1, 2))
    assert [e.uid for e in store.mailbox_index(REF)] == [3, 4, 1, 2]
    assert [e.uid for e in store.snapshot(REF)] == [1, 2, 3, 4]


def test_uidvalidity_round_trip(store):
    store.prepare(REF)
    assert store.load_uidvalidity(REF) is None
    store.save_uidvalidity(REF, 42)
    assert store.load_uidvalidity(REF) == 42


def test_unreadable_state_is_ignored(store):
    store.prepare(REF)
    store.state_path(REF).write_text("{nope")
    assert store.load_uidvalidity(REF) is None


def test_reset_mailbox_removes_entries_and_files(store):
    add_message(store, REF, 1)
    add_message(store, REF, 2)
    store.reset_mailbox(REF)
    assert store.snapshot(REF) == []
    assert maildir.list_keys(store.maildir_path(REF)) == []


def test_cached_mailboxes(store):
    for name in ("INBOX", "Archive", "[Gmail]/Sent Mail"):
        store.prepare(MailboxRef("user@example.com", name))
    assert store.cached_mailboxes("user@example.com") == ["Archive", "INBOX", "[Gmail]/Sent Mail"]
    assert store.cached_mailboxes("nobody@example.com") == []


def test_collect_orphans(store):
    kept = add_message(store, REF, 1)
    orphan_key, writer = maildir.create(store.maildir_path(REF))
    writer.write(b"orphan")
    writer.close()

    assert store.collect_orphans("user@example.com") == 1
    assert maildir.list_keys(store.maildir_path(REF)) == [kept]
    assert store.collect_orphans("user@example.com") == 0


def test_forget_account_reloads_from_disk(store):
    add_message(store, REF, 5)
    first = store.index(REF)
    store.forget_account("user@example.com")
    reloaded = store.index(REF)
    assert reloaded is not first
    assert [e.uid for e in reloaded.snapshot()] == [5]
