"""
Dormant Account Notifier

Drives the notification lifecycle for dormant accounts on top of an issue
tracker. Each dormant account gets at most one open issue (titled with the
account login). On every run the issue is advanced through a grace period:

    no open issue            -> create one labelled 'pending-removal'  (notified)
    'admin-exclusion' label  -> leave untouched                         (excluded)
    grace period expired     -> remove the account, close the issue     (removed)
    account no longer dormant-> close the issue as 'became-active'      (reactivated)
    otherwise                -> nothing to do                           (in grace period)

Supported trackers:
- GitHub Issues (via PyGithub)
- GitLab Issues (via python-gitlab)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Union

from github import GithubException
from jinja2 import Template

from activity_database import ActivityRecord, format_timestamp, parse_timestamp
from dormancy_check import compare_dates_against_duration, duration_to_millis, format_duration


logger = logging.getLogger(__name__)


DEFAULT_NOTIFICATION_TEMPLATE = """\
Hello {{ account }} 👋

Your account has not shown any activity since **{{ last_activity }}** \
({{ time_since_last_activity }} ago){% if dormant_after %} and is considered \
dormant after {{ dormant_after }} of inactivity{% endif %}.

If you still need access, simply use it again within the next \
**{{ grace_period }}** and this issue will be closed automatically.
Otherwise the account will be removed once the grace period ends.

If you believe this is a mistake, please reach out to the organization administrators.
"""

SEARCH_RESULT_LIMIT = 50


class NotificationStatus(str, Enum):
    """Status labels applied to notification issues."""

    ACTIVE = 'became-active'
    EXCLUDED = 'admin-exclusion'
    PENDING = 'pending-removal'
    REMOVED = 'user-removed'


@dataclass
class Ticket:
    """A notification issue in an external tracker."""

    identifier: int
    title: str
    created_at: datetime
    state: str = 'open'
    labels: Set[str] = field(default_factory=set)
    url: str = ''
    assignees: List[str] = field(default_factory=list)

    def has_label(self, label: Union[str, NotificationStatus]) -> bool:
        name = label.value if isinstance(label, NotificationStatus) else label
        return name in self.labels

    def to_dict(self) -> dict:
        return {
            'number': self.identifier,
            'title': self.title,
            'created_at': format_timestamp(self.created_at),
            'state': self.state,
            'labels': sorted(self.labels),
            'html_url': self.url,
            'assignees': list(self.assignees),
        }


# =============================================================================
# Ticket Trackers
# =============================================================================


class TicketTracker(ABC):
    """Minimal issue tracker interface used by the notifier."""

    @abstractmethod
    async def create_ticket(
        self,
        title: str,
        body: str,
        labels: Iterable[str],
        assignees: Optional[List[str]] = None
    ) -> Ticket:
        """Create a new open ticket."""

    @abstractmethod
    async def search_tickets(
        self,
        title: str,
        labels: Iterable[str],
        state: str = 'open',
        assignee: Optional[str] = None
    ) -> List[Ticket]:
        """Structured search by title, labels, state and assignee."""

    @abstractmethod
    async def list_tickets(
        self,
        labels: Iterable[str],
        state: str = 'open',
        assignee: Optional[str] = None
    ) -> List[Ticket]:
        """List tickets filtered by labels, state and assignee."""

    @abstractmethod
    async def add_labels(self, ticket: Ticket, labels: Iterable[str]) -> None:
        """Add labels to a ticket."""

    @abstractmethod
    async def remove_label(self, ticket: Ticket, label: str) -> None:
        """Remove a label from a ticket; a missing label is not an error."""

    @abstractmethod
    async def add_comment(self, ticket: Ticket, body: str) -> None:
        """Add a comment to a ticket."""

    @abstractmethod
    async def close_ticket(self, ticket: Ticket, reason: Optional[str] = None) -> None:
        """Close a ticket."""


class GitHubIssueTracker(TicketTracker):
    """
    GitHub Issues backed tracker.

    PyGithub is synchronous, so every API call runs in a worker thread.

    Args:
        gh: Authenticated PyGithub client
        repo_name: Repository in "owner/repo" format
    """

    def __init__(self, gh, repo_name: str):
        self.gh = gh
        self.repo_name = repo_name
        self._repo = None

    def _get_repo(self):
        if self._repo is None:
            self._repo = self.gh.get_repo(self.repo_name)
        return self._repo

    @staticmethod
    def _to_ticket(issue) -> Ticket:
        created_at = issue.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return Ticket(
            identifier=issue.number,
            title=issue.title,
            created_at=created_at,
            state=issue.state,
            labels={label.name for label in issue.labels},
            url=issue.html_url,
            assignees=[assignee.login for assignee in (issue.assignees or [])],
        )

    async def create_ticket(self, title, body, labels, assignees=None) -> Ticket:
        def create():
            kwargs = {'title': title, 'body': body, 'labels': list(labels)}
            if assignees:
                kwargs['assignees'] = list(assignees)
            return self._get_repo().create_issue(**kwargs)

        issue = await asyncio.to_thread(create)
        return self._to_ticket(issue)

    async def search_tickets(self, title, labels, state='open', assignee=None) -> List[Ticket]:
        query_parts = [f"repo:{self.repo_name}", f"{title} in:title", 'is:issue']
        if state in ('open', 'closed'):
            query_parts.append(f"state:{state}")
        query_parts.extend(f'label:"{label}"' for label in labels)
        if assignee:
            query_parts.append(f"assignee:{assignee}")
        query = ' '.join(query_parts)

        def search():
            tickets = []
            for index, issue in enumerate(self.gh.search_issues(query, sort='created', order='asc')):
                if index >= SEARCH_RESULT_LIMIT:
                    break
                tickets.append(self._to_ticket(issue))
            return tickets

        tickets = await asyncio.to_thread(search)
        logger.debug(f"Found {len(tickets)} issues matching query: {query}")
        return tickets

    async def list_tickets(self, labels, state='open', assignee=None) -> List[Ticket]:
        def list_issues():
            kwargs = {'state': state, 'labels': list(labels)}
            if assignee:
                kwargs['assignee'] = assignee
            return [
                self._to_ticket(issue)
                for issue in self._get_repo().get_issues(**kwargs)
                if issue.pull_request is None
            ]

        return await asyncio.to_thread(list_issues)

    async def add_labels(self, ticket, labels) -> None:
        labels = list(labels)

        def add():
            self._get_repo().get_issue(ticket.identifier).add_to_labels(*labels)

        await asyncio.to_thread(add)
        ticket.labels.update(labels)

    async def remove_label(self, ticket, label) -> None:
        def remove():
            self._get_repo().get_issue(ticket.identifier).remove_from_labels(label)

        try:
            await asyncio.to_thread(remove)
        except GithubException as e:
            if e.status == 404:
                logger.debug(f"Label {label} not found on issue #{ticket.identifier}, skipping removal")
                return
            raise
        ticket.labels.discard(label)
        logger.debug(f"Removed label {label} from issue #{ticket.identifier}")

    async def add_comment(self, ticket, body) -> None:
        def comment():
            self._get_repo().get_issue(ticket.identifier).create_comment(body)

        await asyncio.to_thread(comment)

    async def close_ticket(self, ticket, reason=None) -> None:
        def close():
            issue = self._get_repo().get_issue(ticket.identifier)
            if reason:
                issue.edit(state='closed', state_reason=reason)
            else:
                issue.edit(state='closed')

        await asyncio.to_thread(close)
        ticket.state = 'closed'


class GitLabIssueTracker(TicketTracker):
    """
    GitLab Issues backed tracker.

    Args:
        gl: Authenticated python-gitlab client
        project_id: GitLab project ID or path
    """

    def __init__(self, gl, project_id):
        self.gl = gl
        self.project_id = project_id
        self._project = None

    def _get_project(self):
        if self._project is None:
            self._project = self.gl.projects.get(self.project_id)
        return self._project

    @staticmethod
    def _gitlab_state(state: str) -> Optional[str]:
        return {'open': 'opened', 'closed': 'closed'}.get(state)

    @staticmethod
    def _to_ticket(issue) -> Ticket:
        return Ticket(
            identifier=issue.iid,
            title=issue.title,
            created_at=parse_timestamp(issue.created_at),
            state='open' if issue.state == 'opened' else issue.state,
            labels=set(issue.labels or []),
            url=issue.web_url,
            assignees=[assignee.get('username', '') for assignee in (getattr(issue, 'assignees', None) or [])],
        )

    def _list(self, **filters) -> List[Ticket]:
        state = self._gitlab_state(filters.pop('state', 'open'))
        if state:
            filters['state'] = state
        if not filters.get('assignee_username'):
            filters.pop('assignee_username', None)
        issues = self._get_project().issues.list(get_all=True, **filters)
        return [self._to_ticket(issue) for issue in issues]

    async def create_ticket(self, title, body, labels, assignees=None) -> Ticket:
        def create():
            data = {'title': title, 'description': body, 'labels': ','.join(labels)}
            assignee_ids = []
            for username in assignees or []:
                users = self.gl.users.list(username=username, per_page=1)
                if users:
                    assignee_ids.append(users[0].id)
                else:
                    logger.warning(f"GitLab user {username} not found, issue will not be assigned to them")
            if assignee_ids:
                data['assignee_ids'] = assignee_ids
            return self._get_project().issues.create(data)

        issue = await asyncio.to_thread(create)
        return self._to_ticket(issue)

    async def search_tickets(self, title, labels, state='open', assignee=None) -> List[Ticket]:
        return await asyncio.to_thread(
            self._list,
            search=title,
            labels=list(labels),
            state=state,
            assignee_username=assignee,
            order_by='created_at',
            sort='asc',
        )

    async def list_tickets(self, labels, state='open', assignee=None) -> List[Ticket]:
        return await asyncio.to_thread(
            self._list,
            labels=list(labels),
            state=state,
            assignee_username=assignee,
        )

    async def add_labels(self, ticket, labels) -> None:
        labels = list(labels)

        def add():
            issue = self._get_project().issues.get(ticket.identifier)
            issue.labels = sorted(set(issue.labels or []) | set(labels))
            issue.save()

        await asyncio.to_thread(add)
        ticket.labels.update(labels)

    async def remove_label(self, ticket, label) -> None:
        def remove():
            issue = self._get_project().issues.get(ticket.identifier)
            current = list(issue.labels or [])
            if label not in current:
                return False
            issue.labels = [name for name in current if name != label]
            issue.save()
            return True

        if await asyncio.to_thread(remove):
            logger.debug(f"Removed label {label} from issue #{ticket.identifier}")
        else:
            logger.debug(f"Label {label} not found on issue #{ticket.identifier}, skipping removal")
        ticket.labels.discard(label)

    async def add_comment(self, ticket, body) -> None:
        def comment():
            self._get_project().issues.get(ticket.identifier).notes.create({'body': body})

        await asyncio.to_thread(comment)

    async def close_ticket(self, ticket, reason=None) -> None:
        # GitLab issues have no close reason
        def close():
            issue = self._get_project().issues.get(ticket.identifier)
            issue.state_event = 'close'
            issue.save()

        await asyncio.to_thread(close)
        ticket.state = 'closed'


# =============================================================================
# Ticket Finders
# =============================================================================


def _matches_notification(ticket: Ticket, username: str, labels: Iterable[str]) -> bool:
    return (
        ticket.title == username
        and ticket.state == 'open'
        and all(ticket.has_label(label) for label in labels)
    )


class TicketFinder(ABC):
    """Looks up the open notification ticket for an account."""

    def __init__(self, tracker: TicketTracker):
        self.tracker = tracker

    @abstractmethod
    async def find(
        self,
        username: str,
        base_labels: List[str],
        assignee: Optional[str] = None
    ) -> Optional[Ticket]:
        """Return the open ticket titled username, or None."""


class SearchTicketFinder(TicketFinder):
    """Finds tickets with the tracker's structured search."""

    async def find(self, username, base_labels, assignee=None) -> Optional[Ticket]:
        tickets = await self.tracker.search_tickets(
            title=username, labels=base_labels, state='open', assignee=assignee
        )
        return next((t for t in tickets if _matches_notification(t, username, base_labels)), None)


class ListingTicketFinder(TicketFinder):
    """Lists open tickets with the base labels and filters them in memory."""

    async def find(self, username, base_labels, assignee=None) -> Optional[Ticket]:
        tickets = await self.tracker.list_tickets(labels=base_labels, state='open', assignee=assignee)
        return next((t for t in tickets if _matches_notification(t, username, base_labels)), None)


class FallbackTicketFinder(TicketFinder):
    """Tries each finder in order, moving on when one raises."""

    def __init__(self, finders: List[TicketFinder]):
        if not finders:
            raise ValueError("At least one ticket finder is required")
        super().__init__(finders[0].tracker)
        self.finders = finders

    async def find(self, username, base_labels, assignee=None) -> Optional[Ticket]:
        last_index = len(self.finders) - 1
        for index, finder in enumerate(self.finders):
            try:
                return await finder.find(username, base_labels, assignee)
            except Exception as e:
                if index == last_index:
                    raise
                logger.warning(
                    f"{type(finder).__name__} failed to look up notification for {username}: {e}. "
                    f"Falling back to {type(self.finders[index + 1]).__name__}"
                )
        return None


def default_ticket_finder(tracker: TicketTracker) -> TicketFinder:
    """Structured search first, listing with in-memory filtering as fallback."""
    return FallbackTicketFinder([SearchTicketFinder(tracker), ListingTicketFinder(tracker)])


# =============================================================================
# Notification Bodies
# =============================================================================


def format_activity_date(value: Optional[datetime]) -> Optional[str]:
    """Format a date as e.g. 'January 5, 2024'."""
    if value is None:
        return None
    return f"{value:%B} {value.day}, {value.year}"


def render_notification_body(
    template_text: str,
    record: ActivityRecord,
    grace_period: str,
    dormant_after: Optional[str] = None,
    now: Optional[datetime] = None
) -> str:
    """
    Render a notification body template for an account.

    Template variables: account, last_activity, grace_period,
    time_since_last_activity and dormant_after.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    time_since_last_activity = 'N/A'
    if record.last_activity is not None:
        time_since_last_activity = format_duration(now - record.last_activity)

    template = Template(template_text)
    return template.render(
        account=record.login,
        last_activity=format_activity_date(record.last_activity) or 'None',
        grace_period=grace_period,
        time_since_last_activity=time_since_last_activity,
        dormant_after=dormant_after,
    )


# =============================================================================
# Notifier
# =============================================================================


@dataclass
class ProcessingResult:
    """Outcome of one process_dormant_users run."""

    notified: List[dict] = field(default_factory=list)
    removed: List[dict] = field(default_factory=list)
    removal_declined: List[dict] = field(default_factory=list)
    reactivated: List[dict] = field(default_factory=list)
    excluded: List[dict] = field(default_factory=list)
    in_grace_period: List[dict] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        result = {}
        for name in (
            'notified', 'removed', 'removal_declined', 'reactivated', 'excluded', 'in_grace_period'
        ):
            result[name] = [
                {'user': item['user'], 'notification': item['notification'].to_dict()}
                for item in getattr(self, name)
            ]
        result['errors'] = [{'user': item['user'], 'error': str(item['error'])} for item in self.errors]
        return result


NotificationBodyHandler = Callable[..., str]
RemoveAccountHandler = Callable[[ActivityRecord], Awaitable[bool]]


class DormantAccountNotifier:
    """
    Notification lifecycle for dormant accounts backed by a TicketTracker.

    Args:
        tracker: Issue tracker holding the notifications
        grace_period: Time between notification and removal (e.g. '7d')
        notification_body: Jinja2 template string, or a callable
            (record, grace_period=..., dormant_after=...) -> str
        base_labels: Labels identifying this check's notifications
        dry_run: If True, only log tracker changes and removals
        assign_user_to_issue: Assign the notification to the dormant account
        default_assignee: Assignee used when assign_user_to_issue is False
        dormant_after: Dormancy duration, available to body templates
        remove_account: Coroutine removing an account; returns True on success
        finder: Ticket lookup strategy (defaults to search with listing fallback)
    """

    def __init__(
        self,
        tracker: TicketTracker,
        grace_period: str,
        notification_body: Union[str, NotificationBodyHandler] = DEFAULT_NOTIFICATION_TEMPLATE,
        base_labels: Optional[List[str]] = None,
        dry_run: bool = False,
        assign_user_to_issue: bool = False,
        default_assignee: Optional[str] = None,
        dormant_after: Optional[str] = None,
        remove_account: Optional[RemoveAccountHandler] = None,
        finder: Optional[TicketFinder] = None,
    ):
        if duration_to_millis(grace_period) <= 0:
            raise ValueError(f"Invalid grace period: {grace_period!r}")

        self.tracker = tracker
        self.grace_period = grace_period
        self.notification_body = notification_body
        self.base_labels = list(base_labels or [])
        self.dry_run = dry_run is True
        self.assign_user_to_issue = assign_user_to_issue
        self.default_assignee = default_assignee
        self.dormant_after = dormant_after
        self.remove_account = remove_account
        self.finder = finder or default_ticket_finder(tracker)

    async def process_dormant_users(self, users: List[ActivityRecord]) -> ProcessingResult:
        """
        Advance the notification lifecycle for the current set of dormant users.

        Failures for one account are collected in result.errors and do not
        stop processing of the others.
        """
        result = ProcessingResult()

        reactivated = await self.find_reactivated_users(users)
        reactivated_logins = {ticket.title for ticket in reactivated}

        for ticket in reactivated:
            try:
                if self.dry_run:
                    logger.info(f"[DRY RUN] Would close notification for active user {ticket.title}")
                else:
                    await self.close_notification_for_active_user(ticket.title, ticket)
                result.reactivated.append({'user': ticket.title, 'notification': ticket})
            except Exception as e:
                logger.error(f"Error closing notification for {ticket.title}: {e}")
                result.errors.append({'user': ticket.title, 'error': e})

        for user in users:
            if user.login in reactivated_logins:
                continue

            try:
                notification = await self.get_existing_notification(user.login)

                if notification is None:
                    if self.dry_run:
                        logger.info(f"[DRY RUN] Would notify user: {user.login}")
                        notification = self._placeholder_ticket(user.login)
                    else:
                        notification = await self.notify_user(user)
                    result.notified.append({'user': user.login, 'notification': notification})
                    continue

                if notification.has_label(NotificationStatus.EXCLUDED):
                    logger.info(f"User {user.login} has an admin exclusion, skipping")
                    result.excluded.append({'user': user.login, 'notification': notification})
                    continue

                if not self.has_grace_period_expired(notification):
                    result.in_grace_period.append({'user': user.login, 'notification': notification})
                    continue

                if self.dry_run:
                    logger.info(f"[DRY RUN] Would remove user {user.login}")
                    result.removed.append({'user': user.login, 'notification': notification})
                elif await self.remove_user(user, notification):
                    result.removed.append({'user': user.login, 'notification': notification})
                else:
                    result.removal_declined.append({'user': user.login, 'notification': notification})

            except Exception as e:
                logger.error(f"Error processing dormant user {user.login}: {e}")
                result.errors.append({'user': user.login, 'error': e})

        return result

    @staticmethod
    def _placeholder_ticket(login: str) -> Ticket:
        return Ticket(identifier=0, title=login, created_at=datetime.now(timezone.utc))

    async def find_reactivated_users(self, current_dormant_users: List[ActivityRecord]) -> List[Ticket]:
        """Return open notifications whose account is no longer dormant."""
        dormant_logins = {user.login for user in current_dormant_users}
        open_tickets = await self.tracker.list_tickets(labels=self.base_labels, state='open')
        return [ticket for ticket in open_tickets if ticket.title not in dormant_logins]

    async def get_existing_notification(self, username: str) -> Optional[Ticket]:
        """Return the open notification for username, if any."""
        assignee = username if self.assign_user_to_issue else None
        return await self.finder.find(username, self.base_labels, assignee)

    def _render_body(self, user: ActivityRecord) -> str:
        if callable(self.notification_body):
            return self.notification_body(
                user, grace_period=self.grace_period, dormant_after=self.dormant_after
            )
        return render_notification_body(
            self.notification_body, user, self.grace_period, self.dormant_after
        )

    async def notify_user(self, user: ActivityRecord) -> Ticket:
        """Create the notification issue for a dormant user."""
        logger.info(f"Creating notification for {user.login}")

        if self.assign_user_to_issue:
            assignees = [user.login]
        elif self.default_assignee:
            assignees = [self.default_assignee]
        else:
            assignees = None

        ticket = await self.tracker.create_ticket(
            title=user.login,
            body=f"@{user.login}\n\n{self._render_body(user)}",
            labels=[*self.base_labels, NotificationStatus.PENDING.value],
            assignees=assignees,
        )
        logger.info(f"Notification created for {user.login}: {ticket.url}")
        return ticket

    def has_grace_period_expired(self, notification: Ticket, now: Optional[datetime] = None) -> bool:
        """Check whether more than the grace period has passed since notification."""
        return compare_dates_against_duration(
            self.grace_period, notification.created_at, now
        )['over_duration']

    async def remove_user(self, user: ActivityRecord, notification: Ticket) -> bool:
        """
        Remove a user whose grace period expired and close their notification.

        Returns:
            True if the removal handler confirmed the removal. When it declines
            (or no handler is configured) the notification is left open.
        """
        if self.remove_account is None:
            logger.warning(f"No removal handler configured, user {user.login} was not removed")
            return False

        logger.info(f"Removing user {user.login}")
        if not await self.remove_account(user):
            logger.warning(f"Removal of user {user.login} was declined, notification left open")
            return False

        await self.tracker.add_comment(
            notification,
            f"User {user.login} removed due to inactivity after {self.grace_period} grace period."
        )
        await self.tracker.add_labels(notification, [NotificationStatus.REMOVED.value])
        await self.tracker.close_ticket(notification, reason='completed')
        await self.tracker.remove_label(notification, NotificationStatus.PENDING.value)

        logger.info(f"Notification closed for removed user {user.login}")
        return True

    async def close_notification_for_active_user(self, login: str, notification: Ticket) -> None:
        """Close the notification of a user who became active again."""
        logger.info(f"Closing notification for active user {login}")

        await self.tracker.add_comment(notification, f"User {login} is now active. No removal needed.")
        await self.tracker.add_labels(notification, [NotificationStatus.ACTIVE.value])
        await self.tracker.remove_label(notification, NotificationStatus.PENDING.value)
        await self.tracker.close_ticket(notification, reason='not_planned')

        logger.info(f"Notification closed for active user {login}")

    async def mark_admin_exclusion(self, login: str, notification: Ticket, reason: str) -> None:
        """Exclude a user from removal by labelling their notification."""
        logger.info(f"Marking admin exclusion for {login}: {reason}")

        await self.tracker.add_comment(notification, f"Admin exclusion applied for {login}: {reason}")
        await self.tracker.add_labels(notification, [NotificationStatus.EXCLUDED.value])

    async def get_notifications_by_status(self, status: NotificationStatus) -> List[dict]:
        """List notifications (open or closed) carrying a status label."""
        tickets = await self.tracker.list_tickets(labels=[status.value], state='all')
        return [{'user': ticket.title, 'notification': ticket} for ticket in tickets]
