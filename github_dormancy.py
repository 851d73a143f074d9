"""
GitHub Dormancy Checks

GitHub-backed fetchers, whitelist and removal handlers for DormancyCheck:

- copilot_dormancy: Copilot seat activity (complete snapshot of every seat)
- github_dormancy: organization audit log activity (incremental)

Also persists the activity database in a branch of an activity-log
repository so scheduled runs can pick up where the previous one stopped.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Union

import gitlab
from github import Github, GithubException
from github.GithubObject import NonCompletableGithubObject
from github.PaginatedList import PaginatedList

from activity_database import ActivityRecord, format_timestamp, parse_timestamp
from dormancy_check import (
    DEFAULT_DURATION,
    RESULT_TYPE_COMPLETE,
    RESULT_TYPE_PARTIAL,
    DormancyCheck,
    format_duration,
)


logger = logging.getLogger(__name__)


COPILOT_CHECK_TYPE = 'github-copilot-dormancy'
AUDIT_LOG_CHECK_TYPE = 'github-dormancy'
AUTHENTICATED_AT_BEHAVIORS = ('ignore', 'fallback', 'most-recent')
PER_PAGE = 100


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required keys."""


class AuditLogEntry(NonCompletableGithubObject):
    """
    An organization audit log event.

    PyGithub has no typed wrapper for the audit log, so entries are read
    through a PaginatedList with this class as the content class.
    """

    def _initAttributes(self) -> None:
        self._action = None
        self._actor = None
        self._timestamp = None

    def _useAttributes(self, attributes) -> None:
        self._action = attributes.get('action')
        self._actor = attributes.get('actor')
        self._timestamp = attributes.get('@timestamp')

    @property
    def action(self) -> Optional[str]:
        return self._action

    @property
    def actor(self) -> Optional[str]:
        return self._actor

    @property
    def created_at(self) -> Optional[datetime]:
        return audit_log_timestamp(self._timestamp)


def audit_log_timestamp(value: Union[int, float, str, None]) -> Optional[datetime]:
    """Convert an audit log '@timestamp' (epoch milliseconds or ISO 8601) to a datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return parse_timestamp(value)


def create_github_client(config: dict) -> Github:
    """
    Create and authenticate a GitHub client.

    Args:
        config: Configuration dictionary with 'github' section

    Returns:
        Authenticated PyGithub Github client

    Raises:
        ConfigurationError: If authentication fails
    """
    token = config['github']['token']
    api_url = config['github'].get('api_url')
    try:
        if api_url:
            gh = Github(login_or_token=token, base_url=api_url)
        else:
            gh = Github(login_or_token=token)
        # Verify authentication by fetching the authenticated user
        gh.get_user().login
    except GithubException as e:
        message = e.data.get('message', str(e)) if isinstance(e.data, dict) else str(e)
        raise ConfigurationError(f"Failed to authenticate with GitHub: {message}") from e
    return gh


def create_gitlab_client(config: dict) -> gitlab.Gitlab:
    """Create and authenticate a GitLab client."""
    gl = gitlab.Gitlab(
        url=config['gitlab']['url'],
        private_token=config['gitlab']['private_token']
    )
    gl.auth()
    return gl


def _as_datetime(value: Union[datetime, str, None]) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return parse_timestamp(value)


def determine_last_activity(
    last_activity_at: Union[datetime, str, None],
    last_authenticated_at: Union[datetime, str, None],
    created_at: Union[datetime, str, None],
    behavior: str = 'ignore'
) -> tuple:
    """
    Pick the date representing a Copilot seat's last activity.

    Behaviors:
        ignore: last activity, else seat creation
        fallback: last activity, else last authentication, else seat creation
        most-recent: later of last activity and last authentication, else seat creation

    Returns:
        Tuple of (datetime or None, whether last authentication was used)
    """
    activity = _as_datetime(last_activity_at)
    authenticated = _as_datetime(last_authenticated_at)
    created = _as_datetime(created_at)

    if behavior == 'most-recent':
        if activity and authenticated:
            if authenticated > activity:
                return authenticated, True
            return activity, False
        if authenticated:
            return authenticated, True
        if activity:
            return activity, False
        return created, False

    if behavior == 'fallback':
        if activity:
            return activity, False
        if authenticated:
            return authenticated, True
        return created, False

    return activity or created, False


def _keep_most_recent(processed: dict, record: ActivityRecord, log: logging.Logger) -> None:
    current = processed.get(record.login)
    if current is not None and current.last_activity is not None:
        if record.last_activity is None or record.last_activity <= current.last_activity:
            return

    processed[record.login] = record
    when = 'never'
    if record.last_activity is not None:
        when = f"{format_duration(datetime.now(timezone.utc) - record.last_activity)} ago"
    log.debug(f"Activity record found for {record.login} - {when} - {record.type}")


def list_copilot_seats(gh: Github, org: str) -> list:
    """Return every Copilot seat of an organization as PyGithub CopilotSeat objects."""
    return list(gh.get_organization(org).get_copilot().get_seats())


async def fetch_latest_activity_from_copilot(
    gh: Github,
    org: str,
    authenticated_at_behavior: str = 'ignore',
    **context
) -> List[ActivityRecord]:
    """
    Fetch the last activity of every Copilot seat holder in an organization.

    Seats without an assignee login or with a pending cancellation are
    skipped. Logins are lowercased and only the most recent record per login
    is kept.
    """
    log = context.get('logger') or logger
    if authenticated_at_behavior not in AUTHENTICATED_AT_BEHAVIORS:
        raise ValueError(
            f"Unsupported authenticated_at_behavior: '{authenticated_at_behavior}'. "
            f"Must be one of {', '.join(AUTHENTICATED_AT_BEHAVIORS)}."
        )

    log.debug(f"Fetching Copilot seats for {org}")
    processed = {}

    try:
        seats = await asyncio.to_thread(list_copilot_seats, gh, org)
        log.debug(f"Found {len(seats)} Copilot seats in {org}")

        for seat in seats:
            login = seat.assignee.login if seat.assignee is not None else None
            if not login:
                log.warning(f"Skipping activity record for seat with no assignee login (created {seat.created_at})")
                continue

            actor = login.lower()
            if seat.pending_cancellation_date:
                log.debug(f"Skipping activity record for {actor} due to pending cancellation")
                continue

            last_activity, used_authenticated = determine_last_activity(
                seat.last_activity_at,
                seat.last_authenticated_at,
                seat.created_at,
                authenticated_at_behavior,
            )
            activity_type = 'last_authentication' if used_authenticated else seat.last_activity_editor

            _keep_most_recent(
                processed,
                ActivityRecord(login=actor, last_activity=last_activity, type=activity_type or 'unknown'),
                log,
            )
    except GithubException as e:
        log.error(f"Failed to fetch Copilot seats for {org}: {e}")
        raise

    return list(processed.values())


def list_audit_log(gh: Github, org: str, since: datetime) -> PaginatedList:
    """Paginated audit log events of an organization created at or after since, newest first."""
    return PaginatedList(
        AuditLogEntry,
        gh.requester,
        f"/orgs/{org}/audit-log",
        {
            'include': 'all',
            'phrase': f"created:>={format_timestamp(since)}",
            'order': 'desc',
            'per_page': PER_PAGE,
        },
    )


async def fetch_audit_log_activity(
    gh: Github,
    org: str,
    last_fetch_time: datetime,
    **context
) -> List[ActivityRecord]:
    """
    Fetch the most recent audit log action per actor since last_fetch_time.

    Returns an empty list when the organization has no audit log access.
    """
    log = context.get('logger') or logger

    log.debug(f"Fetching audit log for {org} since {format_timestamp(last_fetch_time)}")
    processed = {}

    try:
        entries = await asyncio.to_thread(lambda: list(list_audit_log(gh, org, last_fetch_time)))
        for entry in entries:
            if not entry.actor:
                continue

            _keep_most_recent(
                processed,
                ActivityRecord(login=entry.actor.lower(), last_activity=entry.created_at, type=entry.action or 'unknown'),
                log,
            )
    except GithubException as e:
        if e.status == 404:
            log.error(
                f"Audit log not found for organization {org}. "
                f"The organization may not have audit log access."
            )
            return []
        log.error(f"Failed to fetch audit log for {org}: {e}")
        raise

    return list(processed.values())


async def default_whitelist_handler(record: ActivityRecord, **context) -> bool:
    """Whitelist bot accounts (logins containing '[bot]')."""
    resolution = '[bot]' in record.login
    (context.get('logger') or logger).debug(f"Whitelist check for {record.login}: {resolution}")
    return resolution


def revoke_copilot_license(gh: Github, org: str, logins: Union[str, List[str]], dry_run: bool = False) -> bool:
    """
    Cancel Copilot seats assigned directly to users.

    Returns:
        True if every requested seat was cancelled; always False in dry-run mode
    """
    selected_usernames = [logins] if isinstance(logins, str) else list(logins)

    if dry_run:
        logger.info(f"[DRY RUN] Would remove Copilot license for {', '.join(selected_usernames)} in {org}")
        return False

    seats_cancelled = gh.get_organization(org).get_copilot().remove_seats(selected_usernames)
    logger.info(f"Removed {seats_cancelled} Copilot license(s) from {org}")
    return seats_cancelled == len(selected_usernames)


def is_team_idp_synced(gh: Github, org: str, team_slug: str) -> bool:
    """Check whether team membership is managed by an identity provider group."""
    # PyGithub has no wrapper for team-sync group mappings
    try:
        _, data = gh.requester.requestJsonAndCheck(
            'GET', f"/orgs/{org}/teams/{team_slug}/team-sync/group-mappings"
        )
    except GithubException as e:
        # Team sync is not available for every organization
        if e.status in (403, 404):
            return False
        raise
    return bool((data or {}).get('groups'))


def remove_copilot_user_from_team(gh: Github, org: str, username: str, team_slug: str, dry_run: bool = False) -> bool:
    """
    Remove a user from the team that grants their Copilot seat.

    Returns:
        True if the user was removed; False for IdP-synced teams and in dry-run mode
    """
    if is_team_idp_synced(gh, org, team_slug):
        logger.info(f"User {username} must be removed from team {team_slug} via the IdP to revoke Copilot license")
        return False

    if dry_run:
        logger.info(f"[DRY RUN] Would remove {username} from team {team_slug} to revoke Copilot license")
        return False

    gh.get_organization(org).get_team_by_slug(team_slug).remove_membership(gh.get_user(username))
    logger.info(f"Removed {username} from team {team_slug}")
    return True


def find_copilot_seat(gh: Github, org: str, login: str):
    """Return the CopilotSeat assigned to login, or None if the user holds no seat."""
    login = login.lower()
    for seat in gh.get_organization(org).get_copilot().get_seats():
        if seat.assignee is not None and (seat.assignee.login or '').lower() == login:
            return seat
    return None


async def remove_copilot_account(
    record: ActivityRecord,
    gh: Github,
    org: str,
    dry_run: bool = False,
    remove_dormant_accounts: bool = True,
    allow_team_removal: bool = False,
    **context
) -> bool:
    """
    Removal hook revoking a dormant user's Copilot seat.

    Seats granted through a team are only revoked when team removal is allowed.
    A seat already pending cancellation, or no seat at all, counts as removed.
    """
    log = context.get('logger') or logger
    seat = await asyncio.to_thread(find_copilot_seat, gh, org, record.login)

    if seat is None:
        log.info(f"User {record.login} no longer holds a Copilot seat in {org}")
        return True

    if seat.pending_cancellation_date:
        log.info(f"User {record.login} already has a pending cancellation date: {seat.pending_cancellation_date}")
        return True

    if not remove_dormant_accounts:
        log.info(f"Removal of dormant accounts is disabled, {record.login} was not removed")
        return False

    assigning_team = seat.assigning_team
    if assigning_team is not None:
        if not allow_team_removal:
            log.info(
                f"User {record.login} is part of team \"{assigning_team.name}\" that provisions "
                f"Copilot access, but team removal is disabled"
            )
            return False
        removed = await asyncio.to_thread(
            remove_copilot_user_from_team, gh, org, record.login, assigning_team.slug, dry_run
        )
    else:
        removed = await asyncio.to_thread(revoke_copilot_license, gh, org, record.login, dry_run)

    if removed:
        log.info(f"Successfully removed Copilot license for {record.login}")
    return removed


def copilot_dormancy(
    gh: Github,
    org: str,
    check_type: str = COPILOT_CHECK_TYPE,
    duration: str = DEFAULT_DURATION,
    authenticated_at_behavior: str = 'ignore',
    conf: Optional[dict] = None,
    **kwargs
) -> DormancyCheck:
    """
    Dormancy check based on Copilot seat activity.

    Every fetch returns the full seat list, so accounts that lost their seat
    are dropped from the database.
    """
    context = dict(conf or {})
    context.update(gh=gh, org=org, authenticated_at_behavior=authenticated_at_behavior)
    kwargs.setdefault('fetch_latest_activity', fetch_latest_activity_from_copilot)
    kwargs.setdefault('remove_user', remove_copilot_account)
    kwargs.setdefault('activity_result_type', RESULT_TYPE_COMPLETE)
    return DormancyCheck(check_type, duration=duration, conf=context, **kwargs)


def github_dormancy(
    gh: Github,
    org: str,
    check_type: str = AUDIT_LOG_CHECK_TYPE,
    duration: str = DEFAULT_DURATION,
    conf: Optional[dict] = None,
    **kwargs
) -> DormancyCheck:
    """Dormancy check based on the organization audit log; bots are whitelisted."""
    context = dict(conf or {})
    context.update(gh=gh, org=org)
    kwargs.setdefault('fetch_latest_activity', fetch_audit_log_activity)
    kwargs.setdefault('is_whitelisted', default_whitelist_handler)
    kwargs.setdefault('activity_result_type', RESULT_TYPE_PARTIAL)
    return DormancyCheck(check_type, duration=duration, conf=context, **kwargs)


# =============================================================================
# Activity Log Repository
# =============================================================================


def get_activity_log(gh: Github, repo_name: str, branch: str, path: str) -> Optional[dict]:
    """
    Fetch the stored activity database from a branch of the activity-log repository.

    Returns:
        Dict with 'content' (str) and 'sha', or None if the branch or file does not exist
    """
    logger.debug(f"Checking for activity log {path} on branch {branch} of {repo_name}")
    try:
        contents = gh.get_repo(repo_name).get_contents(path, ref=branch)
    except GithubException as e:
        if e.status == 404:
            logger.info(f"Activity log not found on branch {branch} of {repo_name}")
            return None
        raise

    return {'content': contents.decoded_content.decode('utf-8'), 'sha': contents.sha}


def ensure_branch(repo, branch: str) -> None:
    """Create branch from the repository's default branch if it does not exist."""
    try:
        repo.get_branch(branch)
        logger.debug(f"Branch already exists: {branch}")
        return
    except GithubException as e:
        if e.status != 404:
            raise

    logger.info(f"Creating branch: {branch}")
    base = repo.get_branch(repo.default_branch)
    repo.create_git_ref(ref=f"refs/heads/{branch}", sha=base.commit.sha)


def save_activity_log(
    gh: Github,
    repo_name: str,
    branch: str,
    path: str,
    content: str,
    sha: Optional[str] = None,
    dry_run: bool = False
) -> None:
    """
    Commit the activity database to a branch of the activity-log repository.

    Args:
        sha: Blob SHA of the existing file, None to create it
    """
    if dry_run:
        logger.info(f"[DRY RUN] Activity log would be saved to {repo_name}/{path} on branch {branch}")
        return

    repo = gh.get_repo(repo_name)
    ensure_branch(repo, branch)

    date_stamp = datetime.now(timezone.utc).strftime('%Y-%m-%d')
    message = f"Update {branch} activity log for {date_stamp}"
    if sha:
        repo.update_file(path, message, content, sha, branch=branch)
    else:
        repo.create_file(path, message, content, branch=branch)

    logger.info(f"Activity log saved to {repo_name}/{path} on branch {branch}")
