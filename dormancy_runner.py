#!/usr/bin/env python3
"""
Dormant Accounts Runner

Runs a dormancy check for a GitHub organization:

1. Restores the activity database from the activity-log repository (if configured)
2. Fetches the latest activity and classifies accounts as active or dormant
3. Optionally drives issue notifications for dormant accounts, removing
   accounts whose grace period expired
4. Saves the activity database back to the activity-log repository

Supported notification platforms:
- GitHub Issues (via PyGithub)
- GitLab Issues (via python-gitlab)
"""

import argparse
import asyncio
import json
import logging
import os
from typing import Optional

import yaml

from activity_database import parse_timestamp
from dormancy_check import DEFAULT_DURATION, duration_to_millis
from dormancy_notifier import (
    DEFAULT_NOTIFICATION_TEMPLATE,
    DormantAccountNotifier,
    GitHubIssueTracker,
    GitLabIssueTracker,
)
from github_dormancy import (
    AUDIT_LOG_CHECK_TYPE,
    AUTHENTICATED_AT_BEHAVIORS,
    COPILOT_CHECK_TYPE,
    ConfigurationError,
    copilot_dormancy,
    create_github_client,
    create_gitlab_client,
    get_activity_log,
    github_dormancy,
    save_activity_log,
)


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


CHECK_FACTORIES = {
    'copilot-dormancy': (COPILOT_CHECK_TYPE, copilot_dormancy),
    'github-dormancy': (AUDIT_LOG_CHECK_TYPE, github_dormancy),
}
DEFAULT_CHECK = 'copilot-dormancy'
DEFAULT_GRACE_PERIOD = '7d'
DEFAULT_BASE_LABELS = ['dormant-account']


def _validate_duration(value, key: str) -> None:
    try:
        if duration_to_millis(value) <= 0:
            raise ValueError(value)
    except ValueError:
        raise ConfigurationError(f"Invalid duration for '{key}': {value!r}")


def validate_config(config: dict) -> None:
    """
    Validate that all required configuration keys are present.

    The 'notifications' section is optional. When its platform is 'gitlab'
    a 'gitlab' section with url and private_token is required.

    Args:
        config: Configuration dictionary to validate

    Raises:
        ConfigurationError: If required keys are missing or values are invalid
    """
    if not config:
        raise ConfigurationError("Configuration is empty")

    if 'github' not in config:
        raise ConfigurationError("Missing 'github' section in configuration")
    if 'token' not in config['github']:
        raise ConfigurationError("Missing required GitHub config key: 'token'")

    if not config.get('org'):
        raise ConfigurationError("No organization configured. Set 'org' in configuration.")

    check = config.get('check_type', DEFAULT_CHECK)
    if check not in CHECK_FACTORIES:
        raise ConfigurationError(
            f"Unsupported check_type: '{check}'. Must be one of: {', '.join(CHECK_FACTORIES)}."
        )

    _validate_duration(config.get('duration', DEFAULT_DURATION), 'duration')

    behavior = config.get('authenticated_at_behavior', 'ignore')
    if behavior not in AUTHENTICATED_AT_BEHAVIORS:
        raise ConfigurationError(
            f"Unsupported authenticated_at_behavior: '{behavior}'. "
            f"Must be one of: {', '.join(AUTHENTICATED_AT_BEHAVIORS)}."
        )

    activity_log_repo = config.get('activity_log_repo')
    if activity_log_repo and len(activity_log_repo.split('/')) != 2:
        raise ConfigurationError(
            f"Invalid activity_log_repo format. Expected \"owner/repo\", got \"{activity_log_repo}\""
        )

    notifications = config.get('notifications') or {}
    if not notifications.get('enabled', False):
        return

    platform = notifications.get('platform', 'github')
    if platform not in ('gitlab', 'github'):
        raise ConfigurationError(
            f"Unsupported notification platform: '{platform}'. Must be 'gitlab' or 'github'."
        )

    if not notifications.get('repo'):
        raise ConfigurationError("Missing required notifications config key: 'repo'")

    _validate_duration(notifications.get('duration', DEFAULT_GRACE_PERIOD), 'notifications.duration')

    if platform == 'gitlab':
        if 'gitlab' not in config:
            raise ConfigurationError("Missing 'gitlab' section in configuration")
        for key in ['url', 'private_token']:
            if key not in config['gitlab']:
                raise ConfigurationError(f"Missing required GitLab config key: '{key}'")

    if not notifications.get('remove_dormant_accounts', False):
        logger.warning(
            "remove_dormant_accounts is disabled. Accounts whose grace period expired will not be removed."
        )


def load_config(config_path: str) -> dict:
    """Load and validate configuration from a YAML file."""
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    validate_config(config)
    return config


def load_notification_body(notifications: dict) -> str:
    """Return the notification body template from 'body', 'body_file' or the default."""
    if notifications.get('body'):
        return notifications['body']

    body_file = notifications.get('body_file')
    if body_file:
        with open(body_file, 'r', encoding='utf-8') as f:
            return f.read()

    return DEFAULT_NOTIFICATION_TEMPLATE


def create_tracker(config: dict, gh):
    """Create the ticket tracker for the configured notification platform."""
    notifications = config['notifications']
    if notifications.get('platform', 'github') == 'gitlab':
        return GitLabIssueTracker(create_gitlab_client(config), notifications['repo'])
    return GitHubIssueTracker(gh, notifications['repo'])


async def process_notifications(config: dict, gh, check, dormant_accounts: list, dry_run: bool):
    """
    Drive the notification lifecycle for the current dormant accounts.

    Accounts removed upstream are also dropped from the activity database.
    """
    notifications = config['notifications']

    async def remove_account(record) -> bool:
        removed = await check.remove_account(record)
        if removed:
            await check.activity.remove(record)
        return removed

    notifier = DormantAccountNotifier(
        tracker=create_tracker(config, gh),
        grace_period=notifications.get('duration', DEFAULT_GRACE_PERIOD),
        notification_body=load_notification_body(notifications),
        base_labels=notifications.get('base_labels', DEFAULT_BASE_LABELS),
        dry_run=dry_run or notifications.get('dry_run', False),
        assign_user_to_issue=notifications.get('assign_user_to_issue', False),
        default_assignee=notifications.get('default_assignee'),
        dormant_after=check.duration,
        remove_account=remove_account,
    )
    return await notifier.process_dormant_users(dormant_accounts)


async def run_dormancy_check(config: dict, dry_run: bool = False, since: Optional[str] = None) -> dict:
    """
    Run the configured dormancy check end to end.

    Args:
        config: Validated configuration dictionary
        dry_run: If True, only log removals, tracker changes and activity log commits
        since: Optional ISO 8601 timestamp overriding the start of the fetch window

    Returns:
        Report with 'summary', 'dormant_accounts', 'active_accounts' and
        'notifications' (None when notifications are disabled)
    """
    dry_run = dry_run or config.get('dry_run', False)
    org = config['org']
    check_name = config.get('check_type', DEFAULT_CHECK)
    check_type, factory = CHECK_FACTORIES[check_name]
    db_path = config.get('database_path') or f"{check_type}.json"
    activity_log_repo = config.get('activity_log_repo')
    notifications = config.get('notifications') or {}

    gh = create_github_client(config)

    logger.info(f"Starting {check_type} check for org: {org}")
    logger.info(f"Duration threshold: {config.get('duration', DEFAULT_DURATION)}")
    logger.info(f"Dry run mode: {dry_run}")

    activity_log = None
    if activity_log_repo:
        activity_log = get_activity_log(gh, activity_log_repo, check_type, os.path.basename(db_path))
        if activity_log:
            with open(db_path, 'w', encoding='utf-8') as f:
                f.write(activity_log['content'])
            logger.info(f"Activity log fetched and saved to {db_path}")
        else:
            logger.info("Activity log does not exist, creating new one")

    factory_kwargs = {
        'duration': config.get('duration', DEFAULT_DURATION),
        'dry_run': dry_run,
        'db_path': db_path,
        'conf': {
            'remove_dormant_accounts': notifications.get('remove_dormant_accounts', False),
            'allow_team_removal': notifications.get('allow_team_removal', False),
        },
    }
    if check_name == 'copilot-dormancy':
        factory_kwargs['authenticated_at_behavior'] = config.get('authenticated_at_behavior', 'ignore')
    check = factory(gh, org, **factory_kwargs)

    await check.fetch_activity(parse_timestamp(since) if since else None)

    statuses = await check.get_account_statuses()
    dormant_accounts = statuses['dormant']
    active_accounts = statuses['active']
    summary = await check.summarize(statuses)

    logger.info(
        f"Found {summary['dormant_accounts']} dormant accounts and "
        f"{summary['active_accounts']} active accounts"
    )

    notification_results = None
    if notifications.get('enabled', False):
        notification_results = await process_notifications(config, gh, check, dormant_accounts, dry_run)
    else:
        logger.info("Notifications are disabled")

    if activity_log_repo:
        content = json.dumps(await check.activity.all(), indent=2)
        save_activity_log(
            gh,
            activity_log_repo,
            check_type,
            os.path.basename(db_path),
            content,
            sha=activity_log['sha'] if activity_log else None,
            dry_run=dry_run,
        )

    return {
        'summary': summary,
        'dormant_accounts': [record.to_dict() for record in dormant_accounts],
        'active_accounts': [record.to_dict() for record in active_accounts],
        'notifications': notification_results,
    }


def log_report(report: dict) -> None:
    """Log a human-readable summary of a run."""
    summary = report['summary']

    logger.info("=" * 50)
    logger.info("Dormant Accounts Summary")
    logger.info("=" * 50)
    logger.info(f"Last activity fetch: {summary['last_activity_fetch']}")
    logger.info(f"Dormancy threshold: {summary['duration']}")
    logger.info(f"Total accounts: {summary['total_accounts']}")
    logger.info(f"Active accounts: {summary['active_accounts']} ({summary['active_account_percentage']}%)")
    logger.info(f"Dormant accounts: {summary['dormant_accounts']} ({summary['dormant_account_percentage']}%)")

    results = report.get('notifications')
    if results is None:
        return

    logger.info("")
    logger.info("=" * 50)
    logger.info("Notification Results")
    logger.info("=" * 50)
    logger.info(f"New notifications created: {len(results.notified)}")
    logger.info(f"Notifications closed (reactivated users): {len(results.reactivated)}")
    logger.info(f"Users removed after grace period: {len(results.removed)}")
    logger.info(f"Removals declined: {len(results.removal_declined)}")
    logger.info(f"Users with admin exclusions: {len(results.excluded)}")
    logger.info(f"Users in grace period: {len(results.in_grace_period)}")
    logger.info(f"Errors encountered: {len(results.errors)}")

    for item in results.errors:
        logger.error(f"  - {item['user']}: {item['error']}")


def write_report(report: dict, output_path: str) -> None:
    """Write the run report as JSON."""
    data = dict(report)
    if data.get('notifications') is not None:
        data['notifications'] = data['notifications'].to_dict()
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
        f.write('\n')
    logger.info(f"Report written to {output_path}")


def main() -> Optional[int]:
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(
        description='Detect dormant GitHub accounts, notify them through issues '
                    'and remove them once the grace period has passed.'
    )
    parser.add_argument(
        '-c', '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Run without removing accounts, changing issues or saving the activity log'
    )
    parser.add_argument(
        '--since',
        help='Fetch activity since this ISO 8601 timestamp instead of the last run'
    )
    parser.add_argument(
        '--output',
        help='Write the run report as JSON to this file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {args.config}")
        return 1
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in configuration file: {e}")
        return 1
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.since:
        try:
            parse_timestamp(args.since)
        except ValueError as e:
            logger.error(f"Invalid --since value: {e}")
            return 1

    try:
        report = asyncio.run(run_dormancy_check(config, dry_run=args.dry_run, since=args.since))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Dormancy check failed: {e}")
        return 1

    log_report(report)

    if args.output:
        write_report(report, args.output)

    results = report.get('notifications')
    if results is not None and results.errors:
        logger.error(f"Notification processing reported {len(results.errors)} error(s)")
        return 1

    logger.info("Dormancy check completed successfully")
    return 0


if __name__ == '__main__':
    exit(main())
