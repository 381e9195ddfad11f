import tempfile
import unittest
from pathlib import Path

from tg_stats.commands import (
    COMMANDS,
    SCORES_USAGE,
    CommandInvocation,
    convert_time,
    lookup_command,
    render_scores,
    render_stats,
)
from tg_stats.metadata_store import MetadataStore

NOW = 1_700_000_000


class _StoreCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.store = MetadataStore.open(Path(self._td.name) / 'messages-test.json.gz', write_interval=3600)

    def tearDown(self) -> None:
        self.store.close()
        self._td.cleanup()


class TestStatsRenderer(_StoreCase):
    def test_single_user_report(self) -> None:
        self.store.add_user_name(7, 'Ann')
        for ts in (NOW, NOW + 10, NOW + 20):
            self.store.add_message(100, 7, ts)

        text = render_stats('/tilasto', 100, self.store, now=NOW + 30)
        self.assertEqual(text, 'Viestejä yhteensä (kaikki): 3\n\nAnn: 3 (100.0%)\n')

    def test_percentages_and_unknown_names(self) -> None:
        self.store.add_user_name(7, 'Ann')
        self.store.add_message(100, 7, NOW)
        self.store.add_message(100, 7, NOW)
        self.store.add_message(100, 8, NOW)

        lines = render_stats('/tilasto', 100, self.store, now=NOW).splitlines()
        self.assertEqual(lines[0], 'Viestejä yhteensä (kaikki): 3')
        self.assertEqual(lines[2:], ['Ann: 2 (66.7%)', '8: 1 (33.3%)'])

    def test_duration_window(self) -> None:
        self.store.add_message(100, 7, NOW - 3 * 3600)
        self.store.add_message(100, 7, NOW - 60)
        self.store.add_message(100, 8, NOW - 2 * 86400)

        text = render_stats('/tilasto 2 hours', 100, self.store, now=NOW)
        self.assertEqual(text, 'Viestejä yhteensä (2 hours): 1\n\n7: 1 (100.0%)\n')

        text = render_stats('/tilasto 3days', 100, self.store, now=NOW)
        self.assertTrue(text.startswith('Viestejä yhteensä (3days): 3\n'))

    def test_unparseable_duration_falls_back_to_all(self) -> None:
        self.store.add_message(100, 7, 5)
        text = render_stats('/tilasto eilen', 100, self.store, now=NOW)
        self.assertTrue(text.startswith('Viestejä yhteensä (kaikki): 1'))

    def test_empty_chat_has_header_only(self) -> None:
        self.assertEqual(render_stats('/tilasto', 555, self.store, now=NOW), 'Viestejä yhteensä (kaikki): 0\n\n')
        self.store.add_message(555, 7, NOW - 86400)
        self.assertEqual(
            render_stats('/tilasto 1h', 555, self.store, now=NOW), 'Viestejä yhteensä (1h): 0\n\n'
        )

    def test_convert_time(self) -> None:
        self.assertEqual(convert_time('/tilasto 1h', now=NOW), (NOW - 3600, '1h'))
        self.assertEqual(convert_time('/tilasto@StatsBot  2 days ', now=NOW), (NOW - 2 * 86400, '2 days'))
        self.assertIsNone(convert_time('/tilasto', now=NOW))
        self.assertIsNone(convert_time('/tilasto 100 years', now=1000))


class TestScoresRenderer(_StoreCase):
    def test_usage_hint_without_argument_and_store_untouched(self) -> None:
        before = self.store.snapshot()
        self.assertEqual(render_scores('/pisteet', 100, self.store), SCORES_USAGE)
        self.assertEqual(render_scores('/pisteet   ', 100, self.store), SCORES_USAGE)
        self.assertEqual(render_scores('/pisteet kesko lidl', 100, self.store), SCORES_USAGE)
        self.assertEqual(self.store.snapshot(), before)

    def test_no_points(self) -> None:
        self.assertEqual(render_scores('/pisteet kesko', 100, self.store), 'Ei pisteitä sanalle kesko')

    def test_leaderboard(self) -> None:
        self.store.add_user_name(7, 'Ann')
        self.store.add_keyword_point('kesko', 100, 8)
        self.store.add_keyword_point('kesko', 100, 7)
        self.store.add_keyword_point('kesko', 100, 7)
        self.store.add_keyword_point('kesko', 200, 9)

        text = render_scores('/pisteet KESKO', 100, self.store)
        self.assertEqual(text, 'Pisteet sanalle kesko:\n\nAnn: 2\n8: 1\n')


class TestCommandRegistry(_StoreCase):
    def test_lookup(self) -> None:
        self.assertEqual(set(COMMANDS), {'/tilasto', '/pisteet'})
        stats = lookup_command('/tilasto')
        assert stats is not None
        self.assertIs(stats.procedure, render_stats)
        self.assertIs(lookup_command('/PISTEET'), COMMANDS['/pisteet'])
        self.assertIsNone(lookup_command('/start'))
        self.assertIsNone(lookup_command(''))

    def test_invocation_rerenders_against_current_store(self) -> None:
        inv = CommandInvocation(command=COMMANDS['/tilasto'], command_text='/tilasto', chat_id=100)
        self.assertIn(': 0', inv.run(self.store))
        self.store.add_message(100, 7, NOW)
        self.assertIn('Viestejä yhteensä (kaikki): 1', inv.run(self.store))


if __name__ == '__main__':
    unittest.main()
