"""Tests for the dormancy check."""

import json
import os
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import dormancy_check
from activity_database import EPOCH, ActivityRecord, IdentityMismatchError
from dormancy_check import DormancyCheck


def _record(login, days_ago=None, activity_type='vscode'):
    last_activity = None
    if days_ago is not None:
        last_activity = datetime.now(timezone.utc) - timedelta(days=days_ago)
    return ActivityRecord(login=login, last_activity=last_activity, type=activity_type)


class TestDurationToMillis(unittest.TestCase):
    """Tests for duration_to_millis function."""

    def test_short_units(self):
        self.assertEqual(dormancy_check.duration_to_millis('30d'), 30 * 24 * 60 * 60 * 1000)
        self.assertEqual(dormancy_check.duration_to_millis('2h'), 2 * 60 * 60 * 1000)
        self.assertEqual(dormancy_check.duration_to_millis('10s'), 10000)
        self.assertEqual(dormancy_check.duration_to_millis('1w'), 7 * 24 * 60 * 60 * 1000)

    def test_long_units_and_spaces(self):
        self.assertEqual(dormancy_check.duration_to_millis('2 weeks'), 14 * 24 * 60 * 60 * 1000)
        self.assertEqual(dormancy_check.duration_to_millis('1 Day'), 24 * 60 * 60 * 1000)

    def test_fractional(self):
        self.assertEqual(dormancy_check.duration_to_millis('1.5h'), 90 * 60 * 1000)

    def test_year(self):
        self.assertEqual(dormancy_check.duration_to_millis('1y'), 365.25 * 24 * 60 * 60 * 1000)

    def test_bare_number_is_millis(self):
        self.assertEqual(dormancy_check.duration_to_millis('250'), 250)
        self.assertEqual(dormancy_check.duration_to_millis(500), 500)

    def test_invalid(self):
        for value in ['', 'abc', '10 parsecs', None, True]:
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    dormancy_check.duration_to_millis(value)


class TestFormatDuration(unittest.TestCase):
    """Tests for format_duration function."""

    def test_days(self):
        self.assertEqual(dormancy_check.format_duration(timedelta(days=10)), '10 days')

    def test_singular(self):
        self.assertEqual(dormancy_check.format_duration(timedelta(hours=1)), '1 hour')

    def test_millis(self):
        self.assertEqual(dormancy_check.format_duration(250), '250 ms')


class TestCompareDatesAgainstDuration(unittest.TestCase):
    """Tests for compare_dates_against_duration function."""

    def setUp(self):
        self.end = datetime(2024, 3, 1, tzinfo=timezone.utc)

    def test_one_millisecond_over(self):
        start = self.end - timedelta(days=30, milliseconds=1)
        result = dormancy_check.compare_dates_against_duration('30d', start, self.end)
        self.assertTrue(result['over_duration'])

    def test_exactly_at_threshold_not_over(self):
        start = self.end - timedelta(days=30)
        result = dormancy_check.compare_dates_against_duration('30d', start, self.end)
        self.assertFalse(result['over_duration'])

    def test_one_millisecond_under(self):
        start = self.end - timedelta(days=30) + timedelta(milliseconds=1)
        result = dormancy_check.compare_dates_against_duration('30d', start, self.end)
        self.assertFalse(result['over_duration'])

    def test_actual_duration(self):
        start = self.end - timedelta(days=10)
        result = dormancy_check.compare_dates_against_duration('30d', start, self.end)
        self.assertEqual(result['actual_duration'], timedelta(days=10))
        self.assertEqual(result['actual_duration_string'], '10 days')


class DormancyCheckTestCase(unittest.IsolatedAsyncioTestCase):
    """Base class providing a temporary database path."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, 'test-check.json')

    def tearDown(self):
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)

    def _check(self, records=None, **kwargs):
        fetch = kwargs.pop('fetch_latest_activity', None) or AsyncMock(return_value=records or [])
        return DormancyCheck(
            'test-check',
            fetch_latest_activity=fetch,
            db_path=self.db_path,
            **kwargs
        )


class TestDormancyCheckInit(DormancyCheckTestCase):
    """Tests for DormancyCheck construction."""

    def test_requires_check_type(self):
        with self.assertRaises(ValueError):
            DormancyCheck('', fetch_latest_activity=AsyncMock())

    def test_rejects_unknown_result_type(self):
        with self.assertRaises(ValueError):
            self._check(activity_result_type='sometimes')

    def test_rejects_invalid_duration(self):
        with self.assertRaises(ValueError):
            self._check(duration='forever')

    def test_default_duration(self):
        check = self._check()
        self.assertEqual(check.duration, '30d')
        self.assertEqual(check.duration_millis, 30 * 24 * 60 * 60 * 1000)


class TestFetchActivity(DormancyCheckTestCase):
    """Tests for DormancyCheck.fetch_activity."""

    async def test_first_fetch_uses_epoch_and_stores_records(self):
        records = [_record('alice', 1), _record('bob', None, 'audit_log')]
        check = self._check(records, conf={'org': 'acme'})

        await check.fetch_activity()

        kwargs = check.fetch_latest_activity.call_args.kwargs
        self.assertEqual(kwargs['last_fetch_time'], EPOCH)
        self.assertEqual(kwargs['org'], 'acme')
        self.assertEqual(kwargs['check_type'], 'test-check')
        self.assertFalse(kwargs['dry_run'])

        accounts = await check.list_accounts()
        self.assertEqual([a.login for a in accounts], ['alice', 'bob'])

    async def test_last_run_set_to_fetch_start(self):
        check = self._check([_record('alice', 1)])
        before = datetime.now(timezone.utc)

        await check.fetch_activity()

        last_run = check.db.get_last_run()
        self.assertGreaterEqual(last_run, before.replace(microsecond=before.microsecond // 1000 * 1000))
        self.assertLessEqual(last_run, datetime.now(timezone.utc))

    async def test_second_fetch_uses_last_run(self):
        check = self._check([_record('alice', 1)])
        await check.fetch_activity()
        last_run = check.db.get_last_run()

        await check.fetch_activity()

        self.assertEqual(check.fetch_latest_activity.call_args.kwargs['last_fetch_time'], last_run)

    async def test_explicit_last_fetch_time(self):
        check = self._check()
        since = datetime(2024, 1, 1, tzinfo=timezone.utc)

        await check.fetch_activity(since)

        self.assertEqual(check.fetch_latest_activity.call_args.kwargs['last_fetch_time'], since)

    async def test_fetch_failure_does_not_advance_last_run(self):
        fetch = AsyncMock(side_effect=RuntimeError('API unavailable'))
        check = self._check(fetch_latest_activity=fetch)

        with self.assertRaises(RuntimeError):
            await check.fetch_activity()

        self.assertEqual(check.db.get_last_run(), EPOCH)

    async def test_logging_failure_does_not_advance_last_run(self):
        log_activity = AsyncMock(side_effect=OSError('disk full'))
        check = self._check([_record('alice', 1)], log_activity_for_user=log_activity)

        with self.assertRaises(OSError):
            await check.fetch_activity()

        self.assertEqual(check.db.get_last_run(), EPOCH)

    async def test_custom_log_activity_handler(self):
        log_activity = AsyncMock()
        record = _record('alice', 1)
        check = self._check([record], log_activity_for_user=log_activity, conf={'org': 'acme'})

        await check.fetch_activity()

        log_activity.assert_awaited_once()
        self.assertIs(log_activity.call_args.args[0], record)
        self.assertEqual(log_activity.call_args.kwargs['org'], 'acme')
        self.assertEqual(await check.list_accounts(), [])

    async def test_partial_keeps_absent_accounts(self):
        check = self._check([_record('alice', 1), _record('bob', 1)])
        await check.fetch_activity()

        check.fetch_latest_activity.return_value = [_record('alice', 0)]
        await check.fetch_activity()

        logins = [a.login for a in await check.list_accounts()]
        self.assertEqual(logins, ['alice', 'bob'])

    async def test_complete_removes_absent_accounts(self):
        check = self._check([_record('alice', 1), _record('bob', 1)], activity_result_type='complete')
        await check.fetch_activity()

        check.fetch_latest_activity.return_value = [_record('alice', 0)]
        await check.fetch_activity()

        logins = [a.login for a in await check.list_accounts()]
        self.assertEqual(logins, ['alice'])

    async def test_complete_dry_run_keeps_absent_accounts(self):
        check = self._check(
            [_record('alice', 1), _record('bob', 1)],
            activity_result_type='complete',
            dry_run=True
        )
        await check.fetch_activity()

        check.fetch_latest_activity.return_value = [_record('alice', 0)]
        await check.fetch_activity()

        logins = [a.login for a in await check.list_accounts()]
        self.assertEqual(logins, ['alice', 'bob'])

    async def test_identity_mismatch_on_fetch(self):
        with open(self.db_path, 'w', encoding='utf-8') as f:
            json.dump({'_state': {'lastRun': '2024-01-01T00:00:00.000Z', 'check-type': 'other-check'}}, f)
        check = self._check([_record('alice', 1)])

        with self.assertRaises(IdentityMismatchError):
            await check.fetch_activity()


class TestClassification(DormancyCheckTestCase):
    """Tests for active/dormant classification."""

    async def _seed(self, check, records):
        for record in records:
            check.db.update_account(record)

    async def test_active_and_dormant_partition(self):
        check = self._check(duration='30d')
        await self._seed(check, [
            _record('carol', 45),
            _record('alice', 5),
            _record('bob', None),
            _record('dave', 29),
        ])

        active = await check.list_active_accounts()
        dormant = await check.list_dormant_accounts()

        self.assertEqual([a.login for a in active], ['alice', 'dave'])
        self.assertEqual([a.login for a in dormant], ['bob', 'carol'])

    async def test_just_inside_threshold_is_active(self):
        check = self._check(duration='30d')
        record = ActivityRecord(
            login='alice',
            last_activity=datetime.now(timezone.utc) - timedelta(days=30) + timedelta(minutes=5),
            type='vscode'
        )
        await self._seed(check, [record])

        self.assertEqual([a.login for a in await check.list_active_accounts()], ['alice'])

    async def test_just_outside_threshold_is_dormant(self):
        check = self._check(duration='30d')
        record = ActivityRecord(
            login='alice',
            last_activity=datetime.now(timezone.utc) - timedelta(days=30, minutes=5),
            type='vscode'
        )
        await self._seed(check, [record])

        self.assertEqual([a.login for a in await check.list_dormant_accounts()], ['alice'])

    async def test_whitelist_overrides_dormancy(self):
        is_dormant = AsyncMock(return_value=True)

        async def is_whitelisted(record, **context):
            return record.login.endswith('[bot]')

        check = self._check(is_dormant=is_dormant, is_whitelisted=is_whitelisted)
        await self._seed(check, [_record('dependabot[bot]', 400), _record('alice', 400)])

        self.assertEqual([a.login for a in await check.list_dormant_accounts()], ['alice'])
        self.assertEqual([a.login for a in await check.list_active_accounts()], ['dependabot[bot]'])
        for call in is_dormant.call_args_list:
            self.assertEqual(call.args[0].login, 'alice')

    async def test_custom_predicate_shares_check_time(self):
        is_dormant = AsyncMock(return_value=False)
        check = self._check(is_dormant=is_dormant, conf={'org': 'acme'})
        await self._seed(check, [_record('alice', 1), _record('bob', 2), _record('carol', 3)])

        await check.list_active_accounts()

        check_times = {call.kwargs['check_time'] for call in is_dormant.call_args_list}
        self.assertEqual(len(check_times), 1)
        self.assertEqual(is_dormant.call_args.kwargs['org'], 'acme')

    async def test_predicate_failure_propagates(self):
        is_dormant = AsyncMock(side_effect=RuntimeError('predicate exploded'))
        check = self._check(is_dormant=is_dormant)
        await self._seed(check, [_record('alice', 1)])

        with self.assertRaises(RuntimeError):
            await check.list_dormant_accounts()

    async def test_whitelist_failure_propagates(self):
        is_whitelisted = AsyncMock(side_effect=RuntimeError('whitelist exploded'))
        is_dormant = AsyncMock(return_value=True)
        check = self._check(is_dormant=is_dormant, is_whitelisted=is_whitelisted)
        await self._seed(check, [_record('alice', 400)])

        with self.assertRaises(RuntimeError):
            await check.list_dormant_accounts()
        with self.assertRaises(RuntimeError):
            await check.summarize()
        is_dormant.assert_not_called()

    async def test_summarize_reuses_statuses(self):
        is_dormant = AsyncMock(return_value=True)
        check = self._check(is_dormant=is_dormant)
        await self._seed(check, [_record('alice', 400), _record('bob', 400)])

        statuses = await check.get_account_statuses()
        summary = await check.summarize(statuses)

        self.assertEqual(is_dormant.await_count, 2)
        self.assertEqual(summary['dormant_accounts'], 2)
        self.assertEqual(summary['total_accounts'], 2)

    async def test_dormancy_does_not_mutate_store(self):
        check = self._check()
        await self._seed(check, [_record('alice', 100)])
        before = check.db.get_raw_document()

        await check.list_dormant_accounts()

        self.assertEqual(check.db.get_raw_document(), before)


class TestSummarize(DormancyCheckTestCase):
    """Tests for DormancyCheck.summarize."""

    async def test_empty_summary(self):
        check = self._check()

        summary = await check.summarize()

        self.assertEqual(summary['total_accounts'], 0)
        self.assertEqual(summary['active_accounts'], 0)
        self.assertEqual(summary['dormant_accounts'], 0)
        self.assertEqual(summary['active_account_percentage'], 0)
        self.assertEqual(summary['dormant_account_percentage'], 0)
        self.assertEqual(summary['duration'], '30d')
        self.assertEqual(summary['last_activity_fetch'], '1970-01-01T00:00:00.000Z')

    async def test_percentages(self):
        check = self._check()
        for record in [_record('alice', 1), _record('bob', 60), _record('carol', 90)]:
            check.db.update_account(record)

        summary = await check.summarize()

        self.assertEqual(summary['total_accounts'], 3)
        self.assertEqual(summary['active_accounts'], 1)
        self.assertEqual(summary['dormant_accounts'], 2)
        self.assertEqual(summary['active_account_percentage'], 33.33)
        self.assertEqual(summary['dormant_account_percentage'], 66.67)
        self.assertAlmostEqual(
            summary['active_account_percentage'] + summary['dormant_account_percentage'], 100, places=5
        )

    async def test_last_activity_fetch_after_fetch(self):
        check = self._check([_record('alice', 1)])
        await check.fetch_activity()

        summary = await check.summarize()

        self.assertNotEqual(summary['last_activity_fetch'], '1970-01-01T00:00:00.000Z')


class TestRemoveAccount(DormancyCheckTestCase):
    """Tests for account removal."""

    async def test_no_hook_returns_false(self):
        check = self._check()
        self.assertFalse(await check.remove_account(_record('alice', 100)))

    async def test_hook_receives_context(self):
        remove_user = AsyncMock(return_value=True)
        check = self._check(remove_user=remove_user, conf={'org': 'acme'}, dry_run=True)
        record = _record('alice', 100)

        self.assertTrue(await check.remove_account(record))
        remove_user.assert_awaited_once()
        self.assertIs(remove_user.call_args.args[0], record)
        self.assertEqual(remove_user.call_args.kwargs['org'], 'acme')
        self.assertTrue(remove_user.call_args.kwargs['dry_run'])

    async def test_activity_remove(self):
        check = self._check()
        check.db.update_account(_record('alice', 1))

        self.assertTrue(await check.activity.remove('alice'))
        self.assertFalse(await check.activity.remove('alice'))

        document = await check.activity.all()
        self.assertEqual(list(document.keys()), ['_state'])


if __name__ == '__main__':
    unittest.main()
