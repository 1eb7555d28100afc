"""Usage metering tests against a temporary sqlite store."""

import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from studyquiz.metering import FREE, MeteringEngine, UsageStatus, add_months
from studyquiz.store import SqliteStore


class MeteringEngineTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = SqliteStore(os.path.join(self.temp_dir.name, 'test_study_data.db'))
        self.store.init()
        self.now = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)
        self.engine = MeteringEngine(self.store, clock=lambda: self.now)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def set_remaining(self, user_id: str, remaining: int) -> None:
        with self.store.connect() as conn:
            conn.execute(
                'UPDATE users SET free_generations_remaining = ? WHERE user_id = ?',
                (remaining, user_id),
            )
            conn.commit()

    def test_first_evaluate_creates_free_record(self) -> None:
        self.assertIsNone(self.store.get_user('new-user'))

        status = self.engine.evaluate('new-user')

        self.assertEqual(status, UsageStatus(True, 10, FREE))
        record = self.store.get_user('new-user')
        self.assertEqual(record['free_generations_remaining'], 10)
        self.assertEqual(record['subscription_status'], FREE)
        self.assertIsNone(record['subscription_expiry'])
        self.assertEqual(record['created_at'], self.now)

    def test_evaluate_is_idempotent(self) -> None:
        first = self.engine.evaluate('u1')
        with patch.object(self.store, 'create_user', wraps=self.store.create_user) as create_user, \
                patch.object(self.store, 'revert_to_free', wraps=self.store.revert_to_free) as revert:
            second = self.engine.evaluate('u1')
        self.assertEqual(first, second)
        create_user.assert_not_called()
        revert.assert_not_called()

    def test_blank_user_id_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.engine.evaluate('  ')

    def test_consume_decrements_by_one(self) -> None:
        self.engine.evaluate('u1')
        self.assertEqual(self.engine.consume('u1'), 9)
        self.assertEqual(self.engine.consume('u1'), 8)
        self.assertEqual(self.store.get_user('u1')['free_generations_remaining'], 8)

    def test_consume_never_goes_negative(self) -> None:
        self.engine.evaluate('u1')
        self.set_remaining('u1', 1)

        self.assertEqual(self.engine.consume('u1'), 0)
        self.assertEqual(self.engine.consume('u1'), 0)
        self.assertEqual(self.engine.consume('u1'), 0)
        self.assertEqual(self.store.get_user('u1')['free_generations_remaining'], 0)
        self.assertEqual(self.engine.evaluate('u1'), UsageStatus(False, 0, FREE))

    def test_consume_for_unknown_user_is_a_no_op(self) -> None:
        self.assertEqual(self.engine.consume('ghost'), 0)
        self.assertIsNone(self.store.get_user('ghost'))

    def test_active_subscriber_bypasses_free_counter(self) -> None:
        self.engine.evaluate('u1')
        self.set_remaining('u1', 4)
        self.store.set_subscription('u1', 'monthly', self.now + timedelta(hours=1))

        status = self.engine.evaluate('u1')
        self.assertEqual(status, UsageStatus(True, 0, 'monthly'))

        for _ in range(3):
            self.assertEqual(self.engine.charge('u1', status), 0)
            self.assertEqual(self.engine.consume('u1'), 0)
        self.assertEqual(self.store.get_user('u1')['free_generations_remaining'], 4)

    def test_lapsed_subscription_is_normalized(self) -> None:
        self.engine.evaluate('u1')
        self.set_remaining('u1', 3)
        self.store.set_subscription('u1', 'yearly', self.now - timedelta(days=1))

        status = self.engine.evaluate('u1')

        self.assertEqual(status, UsageStatus(True, 3, FREE))
        record = self.store.get_user('u1')
        self.assertEqual(record['subscription_status'], FREE)
        self.assertIsNone(record['subscription_expiry'])
        self.assertEqual(record['free_generations_remaining'], 3)

    def test_lapsed_subscription_with_no_free_left_is_denied(self) -> None:
        self.engine.evaluate('u1')
        self.set_remaining('u1', 0)
        self.store.set_subscription('u1', 'monthly', self.now)

        self.assertEqual(self.engine.evaluate('u1'), UsageStatus(False, 0, FREE))

    def test_describe_returns_normalized_record(self) -> None:
        self.engine.evaluate('u1')
        self.store.set_subscription('u1', 'quarterly', self.now - timedelta(seconds=1))

        record = self.engine.describe('u1')

        self.assertEqual(record, {
            'user_id': 'u1',
            'free_generations_remaining': 10,
            'subscription_status': FREE,
            'subscription_expiry': None,
        })

    def test_subscribe_monthly_uses_calendar_months(self) -> None:
        expiry = self.engine.subscribe('u1', 'monthly')

        self.assertEqual(expiry, datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc))
        record = self.store.get_user('u1')
        self.assertEqual(record['subscription_status'], 'monthly')
        self.assertEqual(record['subscription_expiry'], expiry)
        self.assertEqual(record['free_generations_remaining'], 10)

    def test_subscribe_quarterly_and_yearly(self) -> None:
        self.assertEqual(
            self.engine.subscribe('u1', 'quarterly'),
            datetime(2026, 4, 30, 12, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(
            self.engine.subscribe('u1', 'yearly'),
            datetime(2027, 1, 31, 12, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(self.store.get_user('u1')['subscription_status'], 'yearly')

    def test_subscribe_keeps_existing_free_credits(self) -> None:
        self.engine.evaluate('u1')
        self.set_remaining('u1', 2)

        self.engine.subscribe('u1', 'monthly')

        self.assertEqual(self.store.get_user('u1')['free_generations_remaining'], 2)

    def test_subscribe_rejects_unknown_plan(self) -> None:
        with self.assertRaises(ValueError):
            self.engine.subscribe('u1', 'invalid')
        self.assertIsNone(self.store.get_user('u1'))

        self.engine.evaluate('u2')
        with self.assertRaises(ValueError):
            self.engine.subscribe('u2', 'weekly')
        self.assertEqual(self.store.get_user('u2')['subscription_status'], FREE)

    def test_subscribe_plan_names_are_case_sensitive(self) -> None:
        with self.assertRaises(ValueError):
            self.engine.subscribe('u1', 'MONTHLY')
        self.assertIsNone(self.store.get_user('u1'))

    def test_charge_detects_lost_race_for_last_unit(self) -> None:
        self.engine.evaluate('u1')
        self.set_remaining('u1', 1)

        first_usage = self.engine.evaluate('u1')
        second_usage = self.engine.evaluate('u1')
        self.assertTrue(first_usage.allowed)
        self.assertTrue(second_usage.allowed)

        self.assertEqual(self.engine.charge('u1', first_usage), 0)
        self.assertIsNone(self.engine.charge('u1', second_usage))
        self.assertEqual(self.store.get_user('u1')['free_generations_remaining'], 0)

    def test_charge_lets_through_user_who_subscribed_meanwhile(self) -> None:
        self.engine.evaluate('u1')
        self.set_remaining('u1', 1)
        usage = self.engine.evaluate('u1')

        self.engine.subscribe('u1', 'monthly')

        self.assertEqual(self.engine.charge('u1', usage), 0)
        self.assertEqual(self.store.get_user('u1')['free_generations_remaining'], 1)


class AddMonthsTest(unittest.TestCase):
    def test_clamps_to_end_of_month(self) -> None:
        start = datetime(2026, 3, 31, 9, 30, tzinfo=timezone.utc)
        self.assertEqual(add_months(start, 1), datetime(2026, 4, 30, 9, 30, tzinfo=timezone.utc))

    def test_leap_day_plus_one_year(self) -> None:
        start = datetime(2024, 2, 29, tzinfo=timezone.utc)
        self.assertEqual(add_months(start, 12), datetime(2025, 2, 28, tzinfo=timezone.utc))

    def test_crosses_year_boundary(self) -> None:
        start = datetime(2026, 11, 15, tzinfo=timezone.utc)
        self.assertEqual(add_months(start, 3), datetime(2027, 2, 15, tzinfo=timezone.utc))


if __name__ == '__main__':
    unittest.main()
