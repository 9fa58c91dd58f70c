"""Tests for ChunkStore: the registry/filesystem consistency protocol."""
import asyncio
from types import SimpleNamespace

import aiofiles
import aiofiles.os
import pytest

from apps.chunks.models import ChunkRecord
from apps.chunks.services import ChunkStore, LocalStorage
from apps.chunks.views import retrieve_chunk
from apps.context import DeliveryContext
from apps.exceptions import (
    ChunkNotFound,
    CorruptedRecord,
    InvalidName,
    NameAlreadyExists,
    OrphanedFile,
    PartialDelete,
    RegistryWriteFailed,
    StorageDeleteFailed,
    StorageWriteFailed,
)
from apps.manifest.services import ManifestResolver


async def _blocks(*blocks, fail_with=None):
    for block in blocks:
        yield block
    if fail_with is not None:
        raise fail_with


class ExplodingRegistry:
    """Registry whose writes always fail for a reason other than a duplicate."""

    async def insert(self, name, storage_path, size, content_type=None):
        raise RegistryWriteFailed('database is locked')

    async def find_by_name(self, name):
        return None

    async def list_all(self):
        return []

    async def delete_by_name(self, name):
        return False


class UntouchableRegistry:
    async def insert(self, *args, **kwargs):
        raise AssertionError('registry must not be reached')

    find_by_name = list_all = delete_by_name = insert


@pytest.mark.asyncio
async def test_put_then_get_returns_exact_bytes(store):
    payload = bytes(range(256)) * 10
    record = await store.put('data.bin', _blocks(payload[:1000], payload[1000:]), 'application/octet-stream')

    assert record.size == len(payload)
    chunk = await store.get('data.bin')
    assert await chunk.read() == payload


@pytest.mark.asyncio
async def test_put_accepts_plain_bytes(store):
    await store.put('plain.txt', b'hello', 'text/plain')
    chunk = await store.get('plain.txt')
    assert chunk.media_type == 'text/plain'
    assert await chunk.read() == b'hello'


@pytest.mark.asyncio
async def test_media_type_defaults_to_octet_stream(store):
    await store.put('untyped', b'x')
    chunk = await store.get('untyped')
    assert chunk.media_type == 'application/octet-stream'
    await chunk.aclose()


@pytest.mark.asyncio
async def test_size_measured_from_disk(store, storage_root):
    record = await store.put('measured', _blocks(b'abc', b'', b'de'))
    assert record.size == 5
    assert (storage_root / record.storage_path).stat().st_size == 5


@pytest.mark.asyncio
async def test_report_pdf_lifecycle(store):
    record = await store.put('report.pdf', b'0123456789', 'application/pdf')
    assert record.size == 10

    listed = await store.list()
    assert [r.name for r in listed] == ['report.pdf']

    await store.delete('report.pdf')

    with pytest.raises(ChunkNotFound):
        await store.get('report.pdf')
    assert await store.list() == []


@pytest.mark.asyncio
async def test_delete_then_get_is_not_found(store, storage_root):
    await store.put('temp.log', b'log line')
    await store.delete('temp.log')

    with pytest.raises(ChunkNotFound):
        await store.get('temp.log')
    assert not (storage_root / 'temp.log').exists()


@pytest.mark.asyncio
async def test_second_upload_of_same_name_rejected(store, storage_root):
    await store.put('dup.txt', b'first')

    with pytest.raises(NameAlreadyExists):
        await store.put('dup.txt', b'second upload')

    assert (storage_root / 'dup.txt').read_bytes() == b'first'
    assert await ChunkRecord.filter(name='dup.txt').count() == 1
    assert (await store.get('dup.txt')).record.size == 5
    assert sorted(p.name for p in storage_root.iterdir()) == ['dup.txt']


@pytest.mark.asyncio
async def test_concurrent_uploads_of_same_name(store, storage_root):
    results = await asyncio.gather(
        store.put('race.bin', _blocks(b'A' * 4096, b'A' * 4096)),
        store.put('race.bin', _blocks(b'B' * 4096, b'B' * 4096)),
        store.put('race.bin', _blocks(b'C' * 4096, b'C' * 4096)),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, ChunkRecord)]
    losers = [r for r in results if isinstance(r, NameAlreadyExists)]
    assert len(winners) == 1
    assert len(losers) == 2

    content = await (await store.get('race.bin')).read()
    assert len(content) == 8192
    assert len(set(content)) == 1
    assert sorted(p.name for p in storage_root.iterdir()) == ['race.bin']


@pytest.mark.asyncio
async def test_write_failure_leaves_nothing_behind(store, storage_root):
    with pytest.raises(StorageWriteFailed):
        await store.put('broken.bin', _blocks(b'partial', fail_with=OSError(28, 'No space left on device')))

    assert await ChunkRecord.filter(name='broken.bin').count() == 0
    assert list(storage_root.iterdir()) == []


@pytest.mark.asyncio
async def test_aborted_stream_removes_in_flight_file(store, storage_root):
    class ClientGone(Exception):
        pass

    with pytest.raises(ClientGone):
        await store.put('aborted.bin', _blocks(b'half', fail_with=ClientGone()))

    assert await ChunkRecord.filter(name='aborted.bin').count() == 0
    assert list(storage_root.iterdir()) == []


@pytest.mark.asyncio
async def test_registry_failure_keeps_file_as_flagged_orphan(tmp_path):
    root = tmp_path / 'storage'
    store = ChunkStore(ExplodingRegistry(), LocalStorage(root))

    with pytest.raises(RegistryWriteFailed) as exc_info:
        await store.put('keep-me.bin', b'precious')

    assert exc_info.value.orphan_path == 'keep-me.bin'
    assert (root / 'keep-me.bin').read_bytes() == b'precious'


@pytest.mark.asyncio
async def test_duplicate_record_with_missing_file_discards_new_bytes(store, storage_root):
    await store.put('ghosted', b'original')
    (storage_root / 'ghosted').unlink()

    with pytest.raises(NameAlreadyExists):
        await store.put('ghosted', b'replacement')

    assert not (storage_root / 'ghosted').exists()
    assert await ChunkRecord.filter(name='ghosted').count() == 1


@pytest.mark.asyncio
async def test_missing_bytes_reported_as_corrupted(store, storage_root):
    await store.put('vanished', b'bytes')
    (storage_root / 'vanished').unlink()

    with pytest.raises(CorruptedRecord):
        await store.get('vanished')


@pytest.mark.asyncio
async def test_size_mismatch_reported_as_corrupted(store, storage_root):
    await store.put('grown', b'1234')
    with open(storage_root / 'grown', 'ab') as f:
        f.write(b'5678')

    with pytest.raises(CorruptedRecord):
        await store.get('grown')


@pytest.mark.asyncio
async def test_get_losing_race_to_delete_is_not_found(tmp_path):
    class RacingRegistry:
        """First lookup sees the row; by the second a delete has removed it."""

        def __init__(self):
            self.calls = 0

        async def find_by_name(self, name):
            self.calls += 1
            if self.calls == 1:
                return SimpleNamespace(id=1, name=name, storage_path=name, size=3)
            return None

    store = ChunkStore(RacingRegistry(), LocalStorage(tmp_path / 'storage'))
    with pytest.raises(ChunkNotFound):
        await store.get('racing')


@pytest.mark.asyncio
async def test_open_stream_survives_concurrent_delete(store):
    await store.put('held.bin', b'z' * 100_000)
    chunk = await store.get('held.bin')

    await store.delete('held.bin')

    assert await chunk.read() == b'z' * 100_000


@pytest.mark.asyncio
async def test_delete_unknown_name_leaves_files_alone(store, storage_root):
    (storage_root / 'stray').write_bytes(b'orphan')

    with pytest.raises(ChunkNotFound):
        await store.delete('stray')

    assert (storage_root / 'stray').exists()


@pytest.mark.asyncio
async def test_partial_delete_when_file_already_gone(store, storage_root):
    await store.put('half-gone', b'data')
    (storage_root / 'half-gone').unlink()

    with pytest.raises(PartialDelete) as exc_info:
        await store.delete('half-gone')

    assert isinstance(exc_info.value.cause, StorageDeleteFailed)
    assert await ChunkRecord.filter(name='half-gone').count() == 0
    with pytest.raises(ChunkNotFound):
        await store.get('half-gone')


@pytest.mark.asyncio
@pytest.mark.parametrize('name', [
    '../../etc/passwd',
    '',
    '   ',
    '.',
    '..',
    'a/b',
    'a\\b',
    'nul\x00byte',
    '.hidden',
    '.upload-deadbeef.part',
    'CON',
    'lpt1.txt',
    'x' * 256,
    '\ud800',
    '\u00fc' * 200,
])
async def test_invalid_names_rejected_before_filesystem(tmp_path, monkeypatch, name):
    root = tmp_path / 'storage'
    store = ChunkStore(UntouchableRegistry(), LocalStorage(root))

    def _forbidden(*args, **kwargs):
        raise AssertionError('filesystem must not be touched')

    monkeypatch.setattr(aiofiles, 'open', _forbidden)
    monkeypatch.setattr(aiofiles.os, 'link', _forbidden)
    monkeypatch.setattr(aiofiles.os, 'remove', _forbidden)

    with pytest.raises(InvalidName):
        await store.put(name, b'evil')
    with pytest.raises(InvalidName):
        await store.get(name)
    with pytest.raises(InvalidName):
        await store.delete(name)
    assert list(root.iterdir()) == []


@pytest.mark.asyncio
async def test_valid_names_accepted(store):
    for name in ['report.pdf', 'with space.txt', 'ünïcode.bin', 'a..b', 'console.log']:
        record = await store.put(name, b'ok')
        assert record.storage_path == name


@pytest.mark.asyncio
async def test_audit_reports_drift_without_fixing_it(store, storage_root):
    await store.put('healthy', b'fine')
    await store.put('lost', b'gone soon')
    await store.put('resized', b'1234')
    (storage_root / 'lost').unlink()
    (storage_root / 'resized').write_bytes(b'12')
    (storage_root / 'stray.bin').write_bytes(b'nobody owns me')
    (storage_root / '.upload-0123abcd.part').write_bytes(b'half')

    report = await store.audit()

    assert not report.consistent
    assert report.orphans == ['stray.bin']
    assert report.in_flight == ['.upload-0123abcd.part']
    assert {(c.name, c.reason.split(':')[0]) for c in report.corrupted} == {
        ('lost', 'missing'),
        ('resized', 'size mismatch'),
    }
    assert (storage_root / 'stray.bin').exists()
    assert await ChunkRecord.filter(name='lost').count() == 1


@pytest.mark.asyncio
async def test_audit_of_consistent_store(store):
    await store.put('one', b'1')
    await store.put('two', b'22')

    report = await store.audit()
    assert report.consistent
    assert report.orphans == [] and report.corrupted == [] and report.in_flight == []


@pytest.mark.asyncio
async def test_name_limit_counts_encoded_bytes(store):
    # 127 two-byte characters fit in a 255-byte path segment; 128 do not
    record = await store.put('ü' * 127, b'ok')
    assert record.size == 2

    with pytest.raises(InvalidName):
        await store.put('ü' * 128, b'too long')


class FlakyRegistry:
    """Fails the first insert like a dropped connection, then behaves."""

    def __init__(self):
        self.records = {}
        self.inserts = 0

    async def insert(self, name, storage_path, size, content_type=None):
        self.inserts += 1
        if self.inserts == 1:
            raise RegistryWriteFailed('connection reset')
        self.records[name] = SimpleNamespace(id=self.inserts, name=name, storage_path=storage_path,
                                             size=size, content_type=content_type)
        return self.records[name]

    async def find_by_name(self, name):
        return self.records.get(name)

    async def list_all(self):
        return list(self.records.values())

    async def delete_by_name(self, name):
        return self.records.pop(name, None) is not None


@pytest.mark.asyncio
async def test_reupload_over_orphan_reports_orphan_not_conflict(tmp_path):
    root = tmp_path / 'storage'
    store = ChunkStore(FlakyRegistry(), LocalStorage(root))

    with pytest.raises(RegistryWriteFailed):
        await store.put('doc.txt', b'first try')

    with pytest.raises(OrphanedFile) as exc_info:
        await store.put('doc.txt', b'second try')

    assert exc_info.value.orphan_path == 'doc.txt'
    assert (root / 'doc.txt').read_bytes() == b'first try'
    with pytest.raises(ChunkNotFound):
        await store.get('doc.txt')


@pytest.mark.asyncio
async def test_reupload_after_partial_delete_reports_orphan(store, storage_root, monkeypatch):
    await store.put('stuck.bin', b'stuck')

    async def _refuse(relative):
        raise PermissionError(13, 'Permission denied')

    monkeypatch.setattr(store.storage, 'remove', _refuse)
    with pytest.raises(PartialDelete):
        await store.delete('stuck.bin')
    monkeypatch.undo()

    with pytest.raises(OrphanedFile):
        await store.put('stuck.bin', b'fresh')
    assert (storage_root / 'stuck.bin').read_bytes() == b'stuck'


@pytest.mark.asyncio
async def test_fetch_response_closes_file_even_if_never_streamed(store):
    await store.put('idle.bin', b'idle')
    context = DeliveryContext(resolver=ManifestResolver({}, '.'), store=store)
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(context=context)))

    response = await retrieve_chunk(request, 'idle.bin')
    chunk = response.background.func.__self__
    assert not chunk.closed

    await response.background()
    assert chunk.closed
    await chunk.aclose()
