"""
Activity Database

Persists per-account last-activity records for a single dormancy check in one
JSON document. The document carries a ``_state`` entry identifying the check
that owns it, followed by one entry per account keyed by login:

    {
        "_state": {"lastRun": "...", "check-type": "...", "lastUpdated": "..."},
        "alice": {"lastActivity": "2024-01-15T10:30:00.000Z", "type": "vscode"},
        "bob": {"lastActivity": null, "type": "audit_log"}
    }

Every mutation rewrites the whole document with ``_state`` first and the
remaining keys sorted by login.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Union


logger = logging.getLogger(__name__)


STATE_KEY = '_state'
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ActivityDatabaseError(Exception):
    """Base class for activity database errors."""


class IdentityMismatchError(ActivityDatabaseError):
    """Raised when the document belongs to a different check than the caller."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f'Check type mismatch. Database is configured for "{actual}" '
            f'but received "{expected}"'
        )


class MalformedRecordError(ActivityDatabaseError):
    """Raised when a stored entry cannot be read as an activity record."""


def parse_timestamp(date_str: str) -> datetime:
    """
    Parse an ISO 8601 timestamp into a timezone-aware datetime.

    Handles the 'Z' suffix returned by the GitHub/GitLab APIs and written by
    this module. Naive values are assumed to be UTC.

    Args:
        date_str: Date string in ISO 8601 format

    Returns:
        datetime object with timezone info

    Raises:
        ValueError: If the date cannot be parsed
    """
    if not isinstance(date_str, str):
        raise ValueError(f"Unable to parse date: {date_str!r}")

    if date_str.endswith('Z'):
        date_str = date_str[:-1] + '+00:00'

    try:
        parsed = datetime.fromisoformat(date_str)
    except ValueError:
        formats = [
            '%Y-%m-%dT%H:%M:%S%z',
            '%Y-%m-%dT%H:%M:%S.%f%z',
            '%Y-%m-%d %H:%M:%S%z',
        ]
        for fmt in formats:
            try:
                parsed = datetime.strptime(date_str, fmt)
                break
            except ValueError:
                continue
        else:
            raise ValueError(f"Unable to parse date: {date_str}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Format a datetime as UTC ISO 8601 with millisecond precision and a 'Z' suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@dataclass
class ActivityRecord:
    """A single account's last observed activity."""

    login: str
    last_activity: Optional[datetime]
    type: str
    metadata: Optional[dict] = field(default=None)

    def __post_init__(self):
        if not isinstance(self.login, str) or not self.login:
            raise ValueError('Username cannot be empty')
        if not isinstance(self.type, str) or not self.type:
            raise ValueError(f'Activity type cannot be empty for {self.login}')
        if self.last_activity is not None and not isinstance(self.last_activity, datetime):
            raise ValueError(
                f'Last activity for {self.login} must be a datetime or None, '
                f'got {type(self.last_activity).__name__}'
            )

    def to_document_entry(self) -> dict:
        """Serialize the record for storage; the login is carried by the key."""
        entry = {
            'lastActivity': format_timestamp(self.last_activity) if self.last_activity else None,
            'type': self.type,
        }
        if self.metadata is not None:
            entry['metadata'] = self.metadata
        return entry

    @classmethod
    def from_document_entry(cls, login: str, entry: dict) -> 'ActivityRecord':
        """Rebuild a record from its stored value and key."""
        last_activity = entry.get('lastActivity')
        return cls(
            login=login,
            last_activity=parse_timestamp(last_activity) if last_activity else None,
            type=entry.get('type'),
            metadata=entry.get('metadata'),
        )

    def to_dict(self) -> dict:
        """JSON-friendly representation used for reports."""
        return {'login': self.login, **self.to_document_entry()}


def _is_activity_entry(value) -> bool:
    return isinstance(value, dict) and 'lastActivity' in value


class ActivityDatabase:
    """
    JSON document store for one dormancy check.

    Each instance is bound to a check type. Reads and writes fail with
    IdentityMismatchError when the document on disk is stamped with a
    different check type.
    """

    def __init__(self, check_type: str, db_path: Optional[str] = None):
        self.check_type = check_type
        self.db_path = db_path or f"{check_type}.json"
        self._lock = threading.Lock()
        self._data = self._default_document()

    def _default_document(self) -> dict:
        epoch = format_timestamp(EPOCH)
        return {
            STATE_KEY: {
                'lastRun': epoch,
                'check-type': self.check_type,
                'lastUpdated': epoch,
            }
        }

    def _read(self) -> None:
        """Load the document from disk, keeping defaults when the file is absent."""
        if not os.path.exists(self.db_path):
            self._data = self._default_document()
            return

        with open(self.db_path, 'r', encoding='utf-8') as f:
            content = f.read()

        if not content.strip():
            self._data = self._default_document()
            return

        data = json.loads(content)
        if not isinstance(data, dict):
            raise MalformedRecordError(f"Activity database {self.db_path} is not a JSON object")

        if STATE_KEY not in data or not isinstance(data[STATE_KEY], dict):
            data[STATE_KEY] = self._default_document()[STATE_KEY]
        self._data = data

    def _validate_check_type(self) -> None:
        self._read()
        stored_check_type = self._data[STATE_KEY].get('check-type')

        if stored_check_type and stored_check_type != self.check_type:
            logger.error(
                f"Check type mismatch: expected '{self.check_type}', "
                f"database {self.db_path} belongs to '{stored_check_type}'"
            )
            raise IdentityMismatchError(self.check_type, stored_check_type)

    def _write_with_sort(self, data: dict) -> None:
        """
        Write data as the whole document: _state first, accounts sorted by login.

        The in-memory document only changes once the file was replaced.
        """
        state = dict(data[STATE_KEY])
        state['lastUpdated'] = format_timestamp(datetime.now(timezone.utc))

        sorted_data = {STATE_KEY: state}
        for key in sorted(k for k in data if k != STATE_KEY):
            sorted_data[key] = data[key]

        db_dir = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(db_dir, exist_ok=True)

        # Atomic write: temp file in the same directory, then rename
        temp_path = None
        replaced = False
        try:
            with tempfile.NamedTemporaryFile(
                mode='w',
                encoding='utf-8',
                dir=db_dir,
                suffix='.json',
                delete=False
            ) as temp_file:
                temp_path = temp_file.name
                json.dump(sorted_data, temp_file, indent=2)
                temp_file.write('\n')
            os.replace(temp_path, self.db_path)
            replaced = True
        finally:
            if not replaced and temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)

        self._data = sorted_data

    def get_last_run(self) -> datetime:
        """Return the start time of the last successful fetch cycle."""
        with self._lock:
            self._validate_check_type()
            return parse_timestamp(self._data[STATE_KEY]['lastRun'])

    def update_last_run(self, timestamp: Optional[datetime] = None) -> None:
        """
        Record the start time of a successful fetch cycle.

        Args:
            timestamp: Time to record (defaults to now)
        """
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)

        with self._lock:
            self._validate_check_type()
            data = dict(self._data)
            data[STATE_KEY] = dict(data[STATE_KEY], lastRun=format_timestamp(timestamp))
            self._write_with_sort(data)

    def update_account(self, record: ActivityRecord) -> None:
        """Insert or replace the stored activity for record.login."""
        with self._lock:
            self._validate_check_type()
            data = dict(self._data)
            data[record.login] = record.to_document_entry()
            self._write_with_sort(data)
            logger.debug(f"User activity updated for login: {record.login}")

    def remove_account(self, login_or_record: Union[ActivityRecord, str]) -> bool:
        """
        Remove an account from the database.

        Args:
            login_or_record: Either an ActivityRecord or a login string

        Returns:
            True if the account was found and removed, False otherwise
        """
        login = login_or_record if isinstance(login_or_record, str) else login_or_record.login

        with self._lock:
            self._validate_check_type()

            if login == STATE_KEY or login not in self._data:
                logger.debug(f"User {login} not found in database, nothing to remove")
                return False

            data = dict(self._data)
            del data[login]
            self._write_with_sort(data)
            logger.debug(f"User {login} removed from database")
            return True

    def list_accounts(self) -> List[ActivityRecord]:
        """
        Return every stored account as an ActivityRecord.

        Raises:
            MalformedRecordError: If an entry lacks the shape of an activity record
        """
        with self._lock:
            self._validate_check_type()
            entries = [(k, v) for k, v in self._data.items() if k != STATE_KEY]

        records = []
        for login, entry in entries:
            if not _is_activity_entry(entry):
                logger.error(f"Unexpected non-user record found in database: {json.dumps(entry)}")
                raise MalformedRecordError(f"Unexpected non-user record found for key '{login}'")
            try:
                records.append(ActivityRecord.from_document_entry(login, entry))
            except ValueError as e:
                raise MalformedRecordError(f"Invalid activity record for '{login}': {e}") from e
        return records

    def get_raw_document(self) -> dict:
        """Return a shallow copy of the whole document."""
        with self._lock:
            self._validate_check_type()
            return dict(self._data)

    def get_registered_check(self) -> Optional[dict]:
        """
        Return the check stamped on the document without enforcing identity.

        Returns:
            Dict with 'type' and 'last_updated', or None if the document is unstamped
        """
        with self._lock:
            self._read()
            state = self._data[STATE_KEY]

        if not state.get('check-type'):
            return None
        return {
            'type': state['check-type'],
            'last_updated': parse_timestamp(state.get('lastUpdated') or format_timestamp(EPOCH)),
        }
