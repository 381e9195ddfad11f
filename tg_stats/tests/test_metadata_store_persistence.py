import gzip
import json
import tempfile
import unittest
from pathlib import Path

from tg_stats.botlog import BotLog
from tg_stats.metadata_store import (
    MetadataContent,
    MetadataStore,
    SnapshotDecodeError,
    StoreIOError,
    decode_content,
    encode_content,
    find_snapshots,
    load_content,
    snapshot_filename,
)


class _CapturingLog(BotLog):
    def __init__(self) -> None:
        super().__init__()
        self.lines: list[str] = []

    def _write(self, level: str, msg: str) -> None:
        self.lines.append(f'{level} {msg}')


def _sample_content() -> MetadataContent:
    return MetadataContent(
        timestamps_by_chat_user={100: {7: [10, 20, 20, 5]}, -200: {8: [30]}},
        keyword_scores_by_keyword_chat_user={'kesko': {100: {7: 2}, -200: {8: 1}}},
        user_names={7: 'Ann', 8: 'Bob B @bob'},
    )


class TestSnapshotCodec(unittest.TestCase):
    def test_round_trip_preserves_content(self) -> None:
        content = _sample_content()
        self.assertEqual(decode_content(encode_content(content)), content)

    def test_document_fields_and_compression(self) -> None:
        blob = encode_content(_sample_content())
        self.assertEqual(blob[:2], b'\x1f\x8b')
        data = json.loads(gzip.decompress(blob).decode('utf-8'))
        self.assertEqual(
            set(data), {'timestamps_by_chat_user', 'keyword_scores_by_keyword_chat_user', 'user_names'}
        )
        self.assertEqual(data['timestamps_by_chat_user']['-200'], {'8': [30]})

    def test_missing_fields_default_to_empty(self) -> None:
        blob = gzip.compress(json.dumps({'user_names': {'7': 'Ann'}}).encode('utf-8'))
        content = decode_content(blob)
        self.assertEqual(content.user_names, {7: 'Ann'})
        self.assertEqual(content.timestamps_by_chat_user, {})
        self.assertEqual(content.keyword_scores_by_keyword_chat_user, {})

    def test_malformed_documents_raise_decode_error(self) -> None:
        bad = [
            b'not gzip at all',
            gzip.compress(b'{not json'),
            gzip.compress(b'[1, 2, 3]'),
            gzip.compress(json.dumps({'timestamps_by_chat_user': {'x': {'7': [1]}}}).encode('utf-8')),
            gzip.compress(json.dumps({'timestamps_by_chat_user': {'1': {'7': 5}}}).encode('utf-8')),
            gzip.compress(json.dumps({'user_names': {'7': 42}}).encode('utf-8')),
        ]
        for blob in bad:
            with self.subTest(blob=blob[:20]):
                with self.assertRaises(SnapshotDecodeError):
                    decode_content(blob)


class TestStorePersistence(unittest.TestCase):
    def test_teardown_flush_writes_exact_content(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / 'messages-a.json.gz'
            with MetadataStore.open(path, write_interval=3600) as store:
                store.add_user_name(7, 'Ann')
                for ts in (10, 20, 30):
                    store.add_message(100, 7, ts)
                store.add_keyword_point('kesko', 100, 7)
                expected = store.snapshot()
            self.assertTrue(store.closed)

            self.assertEqual(load_content(path), expected)

            with MetadataStore.open(Path(td) / 'messages-b.json.gz', write_interval=3600, source=path) as reopened:
                self.assertEqual(reopened.get_message_counts_by_user(100, 0), [(7, 3)])
                self.assertEqual(reopened.get_scores_by_user('kesko', 100), [(7, 1)])
                self.assertEqual(reopened.get_user_name(7), 'Ann')

    def test_flush_truncates_previous_bytes(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / 'messages-a.json.gz'
            path.write_bytes(b'\xff' * 10000)
            store = MetadataStore.open(path, write_interval=3600)
            store.add_message(1, 7, 10)
            store.close()

            self.assertLess(path.stat().st_size, 10000)
            self.assertEqual(load_content(path).timestamps_by_chat_user, {1: {7: [10]}})

    def test_close_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = MetadataStore.open(Path(td) / 'messages-a.json.gz', write_interval=3600)
            store.close()
            store.close()
            with self.assertRaises(StoreIOError):
                store.sync_file()

    def test_missing_explicit_source_propagates(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(StoreIOError):
                MetadataStore.open(
                    Path(td) / 'messages-a.json.gz',
                    write_interval=3600,
                    source=Path(td) / 'does-not-exist.json.gz',
                )

    def test_undecodable_source_starts_empty(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            source = Path(td) / 'messages-old.json.gz'
            source.write_bytes(b'garbage')
            log = _CapturingLog()
            with MetadataStore.open(
                Path(td) / 'messages-new.json.gz', write_interval=3600, source=source, log=log
            ) as store:
                self.assertEqual(store.snapshot(), MetadataContent())
            self.assertTrue(any('Failed to load' in line for line in log.lines))

    def test_from_backups_uses_first_loadable_candidate(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            corrupt = root / 'messages-3.json.gz'
            corrupt.write_bytes(b'garbage')
            missing = root / 'messages-2.json.gz'
            good = root / 'messages-1.json.gz'
            good.write_bytes(encode_content(_sample_content()))
            older = root / 'messages-0.json.gz'
            older.write_bytes(encode_content(MetadataContent(user_names={1: 'Old'})))

            log = _CapturingLog()
            with MetadataStore.from_backups(
                [corrupt, missing, good, older], root / 'messages-4.json.gz', write_interval=3600, log=log
            ) as store:
                self.assertEqual(store.get_user_name(7), 'Ann')
                self.assertIsNone(store.get_user_name(1))
            self.assertEqual(sum(1 for line in log.lines if 'Failed to load' in line), 2)

            # The loaded backup is left alone; the live snapshot went to the fresh file.
            self.assertEqual(load_content(good), _sample_content())
            self.assertEqual(load_content(root / 'messages-4.json.gz'), _sample_content())

    def test_from_backups_starts_fresh_when_all_fail(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            bad = root / 'messages-1.json.gz'
            bad.write_bytes(b'')
            log = _CapturingLog()
            with MetadataStore.from_backups([bad], root / 'messages-2.json.gz', write_interval=3600, log=log) as store:
                self.assertEqual(store.snapshot(), MetadataContent())
            self.assertIn('INFO Failed to load backups, starting fresh', log.lines)


class TestSnapshotDiscovery(unittest.TestCase):
    def test_find_snapshots_newest_first(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            names = [
                'messages-2024-05-01T10-00-00.json.gz',
                'messages-2025-01-01T00-00-00.json.gz',
                'messages-2024-12-31T23-59-59.json.gz',
                'notes.txt',
            ]
            for name in names:
                (root / name).write_bytes(b'')
            (root / 'messages-dir').mkdir()

            found = [p.name for p in find_snapshots(root)]
            self.assertEqual(
                found,
                [
                    'messages-2025-01-01T00-00-00.json.gz',
                    'messages-2024-12-31T23-59-59.json.gz',
                    'messages-2024-05-01T10-00-00.json.gz',
                ],
            )

    def test_snapshot_filename_sorts_by_time(self) -> None:
        a = snapshot_filename(now=1_600_000_000)
        b = snapshot_filename(now=1_700_000_000)
        self.assertTrue(a.startswith('messages-'))
        self.assertTrue(a.endswith('.json.gz'))
        self.assertLess(a, b)
        self.assertTrue(snapshot_filename('backup', now=0).startswith('backup-'))


if __name__ == '__main__':
    unittest.main()
