"""
Dormancy Check

Classifies accounts as active or dormant based on their last recorded
activity. A check owns one ActivityDatabase, pulls fresh activity through a
caller-supplied fetch handler and answers active/dormant/summary queries
against a configurable inactivity duration (e.g. '30d', '12w', '1y').

Handlers are coroutines receiving keyword context:

- fetch_latest_activity(last_fetch_time=..., check_type=..., dry_run=...,
  duration=..., duration_millis=..., logger=..., **conf) -> List[ActivityRecord]
- is_dormant(record, check_time=..., **context) -> bool
- is_whitelisted(record, **context) -> bool
- log_activity_for_user(record, **context) -> None
- remove_user(record, **context) -> bool
"""

import asyncio
import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Union

from activity_database import ActivityDatabase, ActivityRecord, format_timestamp


logger = logging.getLogger(__name__)


DEFAULT_DURATION = '30d'
RESULT_TYPE_PARTIAL = 'partial'
RESULT_TYPE_COMPLETE = 'complete'

SECOND_MS = 1000
MINUTE_MS = SECOND_MS * 60
HOUR_MS = MINUTE_MS * 60
DAY_MS = HOUR_MS * 24
WEEK_MS = DAY_MS * 7
YEAR_MS = DAY_MS * 365.25
MONTH_MS = YEAR_MS / 12

DURATION_UNITS = {
    'years': YEAR_MS, 'year': YEAR_MS, 'yrs': YEAR_MS, 'yr': YEAR_MS, 'y': YEAR_MS,
    'months': MONTH_MS, 'month': MONTH_MS, 'mo': MONTH_MS,
    'weeks': WEEK_MS, 'week': WEEK_MS, 'w': WEEK_MS,
    'days': DAY_MS, 'day': DAY_MS, 'd': DAY_MS,
    'hours': HOUR_MS, 'hour': HOUR_MS, 'hrs': HOUR_MS, 'hr': HOUR_MS, 'h': HOUR_MS,
    'minutes': MINUTE_MS, 'minute': MINUTE_MS, 'mins': MINUTE_MS, 'min': MINUTE_MS, 'm': MINUTE_MS,
    'seconds': SECOND_MS, 'second': SECOND_MS, 'secs': SECOND_MS, 'sec': SECOND_MS, 's': SECOND_MS,
    'milliseconds': 1, 'millisecond': 1, 'msecs': 1, 'msec': 1, 'ms': 1,
}

DURATION_PATTERN = re.compile(r'^(-?(?:\d+)?\.?\d+)\s*([a-z]+)?$', re.IGNORECASE)

FetchActivityHandler = Callable[..., Awaitable[List[ActivityRecord]]]
IsDormantHandler = Callable[..., Awaitable[bool]]
WhitelistHandler = Callable[..., Awaitable[bool]]
LogActivityHandler = Callable[..., Awaitable[None]]
RemoveUserHandler = Callable[..., Awaitable[bool]]


def duration_to_millis(duration: Union[str, int, float]) -> float:
    """
    Convert a duration string such as '30d', '2 weeks' or '1.5h' to milliseconds.

    A bare number is interpreted as milliseconds.

    Raises:
        ValueError: If the duration cannot be parsed
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, (int, float)):
        return float(duration)
    if not isinstance(duration, str) or not duration.strip() or len(duration) > 100:
        raise ValueError(f"Invalid duration: {duration!r}")

    match = DURATION_PATTERN.match(duration.strip())
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value = float(match.group(1))
    unit = (match.group(2) or 'ms').lower()
    if unit not in DURATION_UNITS:
        raise ValueError(f"Invalid duration unit '{unit}' in {duration!r}")

    return value * DURATION_UNITS[unit]


def parse_duration(duration: Union[str, int, float]) -> timedelta:
    """Convert a duration string to a timedelta."""
    return timedelta(milliseconds=duration_to_millis(duration))


def format_duration(value: Union[timedelta, int, float]) -> str:
    """
    Format a duration in long form, rounded to its largest unit.

    Examples: '10 days', '1 hour', '45 seconds', '250 ms'
    """
    millis = value.total_seconds() * 1000 if isinstance(value, timedelta) else float(value)
    magnitude = abs(millis)

    for unit_ms, name in (
        (DAY_MS, 'day'),
        (HOUR_MS, 'hour'),
        (MINUTE_MS, 'minute'),
        (SECOND_MS, 'second'),
    ):
        if magnitude >= unit_ms:
            count = math.floor(millis / unit_ms + 0.5)
            plural = 's' if magnitude >= unit_ms * 1.5 else ''
            return f"{count} {name}{plural}"

    return f"{math.floor(millis + 0.5)} ms"


def compare_dates_against_duration(
    duration: Union[str, int, float],
    start: datetime,
    end: Optional[datetime] = None
) -> dict:
    """
    Check whether the time elapsed between start and end exceeds duration.

    Args:
        duration: Duration string (e.g. '7d')
        start: Start of the interval
        end: End of the interval (defaults to now)

    Returns:
        Dict with 'over_duration' (strictly greater), 'actual_duration'
        (timedelta) and 'actual_duration_string'
    """
    threshold = parse_duration(duration)
    if threshold <= timedelta(0):
        raise ValueError(f"Invalid duration: {duration!r}")

    if end is None:
        end = datetime.now(timezone.utc)
    actual_duration = end - start

    return {
        'over_duration': actual_duration > threshold,
        'actual_duration': actual_duration,
        'actual_duration_string': format_duration(actual_duration),
    }


class ActivityAccess:
    """Raw document access and account removal for a check."""

    def __init__(self, check: 'DormancyCheck'):
        self._check = check

    async def all(self) -> dict:
        """Return the raw activity document."""
        return self._check.db.get_raw_document()

    async def remove(self, user: Union[ActivityRecord, str]) -> bool:
        """Remove an account from the activity database."""
        login = user if isinstance(user, str) else user.login
        removed = self._check.db.remove_account(user)
        if removed:
            self._check.logger.info(f"Removed user {login} from database")
        else:
            self._check.logger.warning(f"User {login} not found in database")
        return removed


class DormancyCheck:
    """
    Tracks account activity for one check type and classifies dormancy.

    Args:
        check_type: Identity of the check; also names the default database file
        fetch_latest_activity: Coroutine returning fresh ActivityRecords
        duration: Inactivity threshold after which an account is dormant
        dry_run: When True, destructive actions are only logged
        activity_result_type: 'partial' (incremental batches) or 'complete'
            (each batch is the full population; absent accounts are removed)
        db_path: Path of the activity database (defaults to '<check_type>.json')
        conf: Extended configuration passed to every handler
        is_dormant: Custom dormancy predicate
        is_whitelisted: Predicate exempting accounts from dormancy
        log_activity_for_user: Custom persistence for fetched records
        remove_user: Hook removing an account from the upstream system
    """

    def __init__(
        self,
        check_type: str,
        fetch_latest_activity: FetchActivityHandler,
        duration: Union[str, int, float] = DEFAULT_DURATION,
        dry_run: bool = False,
        activity_result_type: str = RESULT_TYPE_PARTIAL,
        db_path: Optional[str] = None,
        conf: Optional[dict] = None,
        is_dormant: Optional[IsDormantHandler] = None,
        is_whitelisted: Optional[WhitelistHandler] = None,
        log_activity_for_user: Optional[LogActivityHandler] = None,
        remove_user: Optional[RemoveUserHandler] = None,
    ):
        if not check_type:
            raise ValueError("check_type is required")
        if fetch_latest_activity is None:
            raise ValueError("fetch_latest_activity handler is required")
        if activity_result_type not in (RESULT_TYPE_PARTIAL, RESULT_TYPE_COMPLETE):
            raise ValueError(
                f"Unsupported activity_result_type: '{activity_result_type}'. "
                f"Must be '{RESULT_TYPE_PARTIAL}' or '{RESULT_TYPE_COMPLETE}'."
            )

        self.type = check_type
        self.fetch_latest_activity = fetch_latest_activity
        self.duration = duration or DEFAULT_DURATION
        self.duration_millis = duration_to_millis(self.duration)
        if self.duration_millis <= 0:
            raise ValueError(f"Invalid duration: {self.duration!r}")
        self.dry_run = dry_run is True
        self.activity_result_type = activity_result_type
        self.conf = dict(conf or {})
        self.is_dormant = is_dormant or self._default_dormancy_handler
        self.is_whitelisted = is_whitelisted
        self.log_activity_for_user = log_activity_for_user
        self.remove_user = remove_user

        self.logger = logger.getChild(check_type)
        self.db = ActivityDatabase(check_type, db_path)
        self.activity = ActivityAccess(self)

        self.logger.debug(
            f"Dormancy check initialized: duration={self.duration}, dry_run={self.dry_run}, "
            f"activity_result_type={self.activity_result_type}, db_path={self.db.db_path}"
        )

    def _handler_context(self) -> dict:
        """Extended configuration plus check settings, passed to every handler."""
        context = dict(self.conf)
        context.update(
            check_type=self.type,
            dry_run=self.dry_run,
            duration=self.duration,
            duration_millis=self.duration_millis,
            logger=self.logger,
        )
        return context

    async def _default_dormancy_handler(
        self,
        record: ActivityRecord,
        check_time: datetime,
        **context
    ) -> bool:
        if record.last_activity is None:
            self.logger.warning(f"User {record.login} has no activity, considered dormant")
            return True

        comparison = compare_dates_against_duration(self.duration, record.last_activity, check_time)
        is_dormant = comparison['over_duration']

        self.logger.debug(
            f"User {record.login} last activity was {comparison['actual_duration_string']} ago "
            f"which is {'greater' if is_dormant else 'less'} than maximum duration {self.duration}"
        )
        return is_dormant

    async def _log_activity_for_user(self, record: ActivityRecord) -> None:
        if self.log_activity_for_user is None:
            self.logger.debug(f"Updating user activity for {record.login} using default method")
            self.db.update_account(record)
            return

        self.logger.debug(f"Updating user activity for {record.login} using custom method")
        await self.log_activity_for_user(record, **self._handler_context())

    async def _remove_missing_accounts(self, entries: List[ActivityRecord]) -> None:
        """Remove stored accounts absent from a complete activity snapshot."""
        fetched_logins = {entry.login for entry in entries}
        stored_accounts = await self.list_accounts()
        missing = [record for record in stored_accounts if record.login not in fetched_logins]

        if not missing:
            self.logger.info("No accounts to remove based on complete activity results")
            return

        self.logger.info(f"Found {len(missing)} accounts no longer in the system")
        for record in missing:
            if self.dry_run:
                self.logger.info(f"[DRY RUN] Would remove user {record.login}")
                continue
            self.logger.info(f"Removing user {record.login} as they are no longer in the system")
            await self.activity.remove(record)

    async def fetch_activity(self, last_fetch_time: Optional[datetime] = None) -> None:
        """
        Fetch the latest activity and merge it into the database.

        The last run is only advanced when the whole cycle succeeds, and it is
        set to the time the cycle started so activity during a slow fetch is
        picked up next time.

        Args:
            last_fetch_time: Optional override for the start of the fetch window
        """
        fetch_start_time = datetime.now(timezone.utc)
        last_run = last_fetch_time or self.db.get_last_run()

        self.logger.info(f"Fetching latest activity since {format_timestamp(last_run)}")

        try:
            entries = await self.fetch_latest_activity(
                last_fetch_time=last_run,
                **self._handler_context()
            )
            self.logger.info(f"Fetched {len(entries)} activity records")

            await asyncio.gather(*(self._log_activity_for_user(entry) for entry in entries))
            self.logger.info("Finished logging latest activity")

            if self.activity_result_type == RESULT_TYPE_COMPLETE:
                await self._remove_missing_accounts(entries)

            self.db.update_last_run(fetch_start_time)
        except Exception as e:
            self.logger.error(f"Failed fetching and logging latest activity: {e}")
            raise

        self.logger.info("Completed fetching and logging latest activity")

    async def _check_whitelist(self, record: ActivityRecord, context: dict) -> bool:
        if self.is_whitelisted is None:
            return False
        return bool(await self.is_whitelisted(record, **context))

    async def get_account_statuses(self) -> dict:
        """
        Partition all accounts into sorted 'active' and 'dormant' lists.

        Every account is classified once against the same check time.
        """
        accounts = await self.list_accounts()

        # One check time for every account in this pass
        check_time = datetime.now(timezone.utc)
        context = self._handler_context()

        async def classify(record: ActivityRecord) -> bool:
            if await self._check_whitelist(record, context):
                return False
            return bool(await self.is_dormant(record, check_time=check_time, **context))

        verdicts = await asyncio.gather(*(classify(record) for record in accounts))

        active = [record for record, dormant in zip(accounts, verdicts) if not dormant]
        dormant = [record for record, is_dormant in zip(accounts, verdicts) if is_dormant]
        active.sort(key=lambda record: record.login)
        dormant.sort(key=lambda record: record.login)

        return {'active': active, 'dormant': dormant}

    async def list_accounts(self) -> List[ActivityRecord]:
        """List every account in the database."""
        return self.db.list_accounts()

    async def list_active_accounts(self) -> List[ActivityRecord]:
        """List accounts active within the configured duration."""
        statuses = await self.get_account_statuses()
        return statuses['active']

    async def list_dormant_accounts(self) -> List[ActivityRecord]:
        """List accounts inactive for longer than the configured duration."""
        statuses = await self.get_account_statuses()
        return statuses['dormant']

    async def summarize(self, statuses: Optional[dict] = None) -> dict:
        """
        Summarize account activity.

        Args:
            statuses: Result of get_account_statuses to reuse, classified anew if omitted

        Returns:
            Dict with last_activity_fetch, total/active/dormant counts,
            percentages rounded to two decimals and the duration threshold
        """
        if statuses is None:
            statuses = await self.get_account_statuses()
        active_count = len(statuses['active'])
        dormant_count = len(statuses['dormant'])
        total = active_count + dormant_count

        return {
            'last_activity_fetch': format_timestamp(self.db.get_last_run()),
            'total_accounts': total,
            'active_accounts': active_count,
            'dormant_accounts': dormant_count,
            'active_account_percentage': round(active_count / total * 100, 2) if total else 0,
            'dormant_account_percentage': round(dormant_count / total * 100, 2) if total else 0,
            'duration': self.duration,
        }

    async def remove_account(self, record: ActivityRecord) -> bool:
        """
        Remove an account from the upstream system using the remove_user hook.

        Returns:
            The hook's result, or False when no hook is configured
        """
        if self.remove_user is None:
            self.logger.warning(f"No remove_user handler configured, cannot remove {record.login}")
            return False
        return bool(await self.remove_user(record, **self._handler_context()))
