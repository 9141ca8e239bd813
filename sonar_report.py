#!/usr/bin/env python3
"""
SonarQube Report Generator
Produces CSV reports from a SonarQube server: users who log into SonarQube but
do not use SonarLint in connected mode, and issues raised by Secrets detection rules.
"""

import csv
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence
import requests
import argparse


# SonarQube user timestamps carry no usable timezone; only the local part is read
SONAR_DATETIME_FORMAT = '%Y-%m-%dT%H:%M:%S'
SONAR_DATETIME_LENGTH = 19

# Day count reported for a timestamp that was never set
NEVER_DAYS = 2147483647

USERS_PAGE_SIZE = 50
PROJECTS_PAGE_SIZE = 100  # fixed by the server for api/projects/search
SECRETS_RULE_PREFIX = 'secrets'

DAYS_SINCE_SQ_LOGIN = 90
DAYS_SINCE_SL_CONNECTION = 90

ABORT = 'abort'
SKIP = 'skip'

USERS_HEADER = ['name', 'login', 'lastSonarQubeDate', 'lastSonarQubeDays',
                'lastSonarLintDate', 'lastSonarLintDays']
SECRETS_HEADER = ['projectKey', 'branch', 'fileName', 'rule', 'status', 'message', 'author']

USAGE = ('Expected usage: sonar-report {1} {2} {3} {4}\n'
         'where: \n'
         '\t {1} is your sonar token,\n'
         '\t {2} is your SonarQube URL,\n'
         '\t {3} is the name of the file to save results,\n'
         '\t {4} is either "users" or "secrets"')

logger = logging.getLogger('sonar_report')


class SonarApiError(Exception):
    """A SonarQube API call did not return HTTP 200."""

    def __init__(self, url: str, status_code: Optional[int] = None, message: str = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message or f"{url} returned {status_code}")


class SonarConnectionError(SonarApiError):
    """The request never produced a usable response."""


class ReportWriteError(Exception):
    """The report file could not be written."""


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def setup_logging(log_format: str = 'text', verbose: bool = False) -> logging.Logger:
    """Setup logging with either text or JSON format."""
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if log_format == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
    logger.addHandler(handler)
    return logger


@dataclass(frozen=True)
class ReportConfig:
    """Connection settings and report thresholds shared by every request."""
    token: str
    base_url: str
    login_days: int = DAYS_SINCE_SQ_LOGIN
    lint_days: int = DAYS_SINCE_SL_CONNECTION
    http_errors: str = ABORT
    network_errors: str = SKIP

    def __post_init__(self):
        if self.base_url.endswith('/'):
            object.__setattr__(self, 'base_url', self.base_url[:-1])
        for policy in (self.http_errors, self.network_errors):
            if policy not in (ABORT, SKIP):
                raise ValueError(f"Unknown failure policy: {policy}")


@dataclass(frozen=True)
class UserRecord:
    name: str
    login: str
    last_sq_connection: Optional[datetime]
    last_sl_connection: Optional[datetime]
    sq_days: int
    sl_days: int

    def to_row(self) -> List[Any]:
        return [self.name, self.login,
                *_date_and_days(self.last_sq_connection, self.sq_days),
                *_date_and_days(self.last_sl_connection, self.sl_days)]


@dataclass(frozen=True)
class FindingRecord:
    project_key: str
    branch: str
    file_name: str
    rule: str
    status: str
    message: str
    author: str
    # Kept from the export but not written to the report
    assignee: str = ''

    def to_row(self) -> List[Any]:
        return [self.project_key, self.branch, self.file_name, self.rule,
                self.status, self.message, self.author]


def _date_and_days(when: Optional[datetime], days: int) -> List[Any]:
    if when is None:
        return ['Never', 'Never']
    return [when.strftime(SONAR_DATETIME_FORMAT), days]


def parse_sonar_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a SonarQube connection date, ignoring any offset or fraction suffix."""
    if value is None:
        return None
    return datetime.strptime(value[:SONAR_DATETIME_LENGTH], SONAR_DATETIME_FORMAT)


def days_since(when: Optional[datetime], now: datetime) -> int:
    """
    Whole days between two moments, in either order.

    Fractional days are truncated. A missing timestamp counts as NEVER_DAYS.
    """
    if when is None:
        return NEVER_DAYS
    return abs(now - when) // timedelta(days=1)


def is_non_sonarlint_user(sq_days: int, sl_days: int, login_days: int, lint_days: int) -> bool:
    """Recent SonarQube login, but no SonarLint connection inside the window."""
    return sq_days < login_days and sl_days > lint_days


def iter_pages(fetch_page: Callable[[int], Optional[Dict]],
               has_more: Callable[[Optional[Dict], int], bool],
               first_page: int = 1) -> Iterator[Dict]:
    """
    Walk a paged collection.

    Args:
        fetch_page: Returns the payload for a page number, or None if the fetch was skipped
        has_more: Decides from the last payload and page number whether to fetch the next page
        first_page: Number of the first page requested

    Yields:
        Each payload that was fetched, in page order
    """
    page = first_page
    while True:
        payload = fetch_page(page)
        if payload is not None:
            yield payload
        if not has_more(payload, page):
            return
        page += 1


def users_have_more(total: int, page_size: int = USERS_PAGE_SIZE) -> Callable[[Optional[Dict], int], bool]:
    """Continue until page_size * pages covers the known total."""
    return lambda payload, page: total - page * page_size > 0


def projects_have_more(page_size: int = PROJECTS_PAGE_SIZE) -> Callable[[Optional[Dict], int], bool]:
    """Continue while the total reported by the last page exceeds what was requested so far."""
    def has_more(payload: Optional[Dict], page: int) -> bool:
        if payload is None:
            return False
        return payload['paging']['total'] > page * page_size
    return has_more


def single_page(payload: Optional[Dict], page: int) -> bool:
    return False


class SonarQubeClient:
    """Read users, projects, branches and findings from a SonarQube server."""

    def __init__(self, config: ReportConfig):
        """
        Initialize the SonarQube client.

        Args:
            config: Token, server URL, thresholds and failure policies
        """
        self.config = config
        self.headers = {'Authorization': f'Bearer {config.token}'}

    def _make_request(self, endpoint: str, params: Dict = None) -> Optional[Dict]:
        """
        Make a GET request to the SonarQube API.

        Returns the parsed JSON body, or None when the failure policy says to skip.
        Raises SonarApiError when the failure policy says to abort.
        """
        url = f"{self.config.base_url}/{endpoint}"
        try:
            response = requests.get(url, headers=self.headers, params=params)
            if response.status_code != 200:
                logger.error(f"{response.url} returned {response.status_code}")
                return self._fail(SonarApiError(url, response.status_code), self.config.http_errors)
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Error making request to {endpoint}: {e}")
            return self._fail(SonarConnectionError(url, message=str(e)), self.config.network_errors)

    @staticmethod
    def _fail(error: SonarApiError, policy: str) -> None:
        if policy == ABORT:
            raise error
        return None

    def get_total_users(self) -> int:
        payload = self._make_request('api/v2/users-management/users', {'q': '', 'pageSize': 0})
        if payload is None:
            return 0
        return payload['page']['total']

    def _users_from_page(self, payload: Dict, now: datetime,
                         login_days: int, lint_days: int) -> List[UserRecord]:
        matched = []
        for user in payload.get('users', []):
            try:
                last_sq = parse_sonar_datetime(user.get('sonarQubeLastConnectionDate'))
                last_sl = parse_sonar_datetime(user.get('sonarLintLastConnectionDate'))
            except ValueError as e:
                logger.warning(f"Unreadable connection date for {user.get('login')}, "
                               f"skipping rest of page: {e}")
                break
            record = UserRecord(
                name=user.get('name', ''),
                login=user['login'],
                last_sq_connection=last_sq,
                last_sl_connection=last_sl,
                sq_days=days_since(last_sq, now),
                sl_days=days_since(last_sl, now),
            )
            if is_non_sonarlint_user(record.sq_days, record.sl_days, login_days, lint_days):
                matched.append(record)
        return matched

    def list_users(self, login_days: int = None, lint_days: int = None,
                   now: datetime = None) -> List[UserRecord]:
        """
        Get every user who logged into SonarQube within login_days but has not
        connected with SonarLint within lint_days.

        Args:
            login_days: Days since SonarQube login (default: from config)
            lint_days: Days since SonarLint connection (default: from config)
            now: Reference time for day counts (default: current local time)

        Returns:
            Matching users, in server order
        """
        login_days = self.config.login_days if login_days is None else login_days
        lint_days = self.config.lint_days if lint_days is None else lint_days
        now = now or datetime.now()
        total = self.get_total_users()
        if total == 0:
            return []

        def fetch_page(page: int) -> Optional[Dict]:
            return self._make_request('api/v2/users-management/users', {
                'q': '',
                'pageSize': USERS_PAGE_SIZE,
                'pageIndex': page,
            })

        users = []
        for payload in iter_pages(fetch_page, users_have_more(total)):
            users.extend(self._users_from_page(payload, now, login_days, lint_days))
        return users

    def list_projects(self) -> List[str]:
        """Get the key of every project on the server."""
        pages = iter_pages(
            lambda page: self._make_request('api/projects/search', {'p': page}),
            projects_have_more()
        )
        return [project['key'] for payload in pages for project in payload.get('components', [])]

    def list_branches(self, project_key: str) -> List[str]:
        pages = iter_pages(
            lambda page: self._make_request('api/project_branches/list', {'project': project_key}),
            single_page
        )
        return [branch['name'] for payload in pages for branch in payload.get('branches', [])]

    def find_branch_secrets(self, project_key: str, branch: str) -> List[FindingRecord]:
        """Get the findings on one branch that come from Secrets detection rules."""
        pages = iter_pages(
            lambda page: self._make_request('api/projects/export_findings',
                                            {'project': project_key, 'branch': branch}),
            single_page
        )
        secrets = []
        for payload in pages:
            for finding in payload.get('export_findings', []):
                rule = finding.get('ruleReference') or ''
                if not rule.startswith(SECRETS_RULE_PREFIX):
                    continue
                secrets.append(FindingRecord(
                    project_key=project_key,
                    branch=branch,
                    file_name=finding.get('path', ''),
                    rule=rule,
                    status=finding.get('issueStatus', ''),
                    message=finding.get('message', ''),
                    author=finding.get('author', ''),
                    assignee=finding.get('assignee', ''),
                ))
        return secrets

    def find_secrets(self) -> List[FindingRecord]:
        """
        Find every Secrets detection issue on every branch of every project.

        This walks projects, then their branches, then each branch's full findings
        export, so it can take a while on large servers. Progress is logged per project.
        """
        project_keys = self.list_projects()
        logger.info(f"there are {len(project_keys)} projects")

        secrets = []
        for project_key in project_keys:
            logger.info(f"Finding secrets for {project_key}")
            for branch in self.list_branches(project_key):
                secrets.extend(self.find_branch_secrets(project_key, branch))
        return secrets


def write_report(output_path: str, header: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    """
    Write a header line and one CSV line per row, flushing after each line.

    Raises:
        ReportWriteError: If the file cannot be created or written
    """
    try:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f, lineterminator='\n')
            writer.writerow(header)
            f.flush()
            for row in rows:
                writer.writerow(row)
                f.flush()
    except OSError as e:
        logger.error(f"Failed to write report to {output_path}: {e}")
        raise ReportWriteError(str(e)) from e


def setup_argument_parser() -> argparse.ArgumentParser:
    """Setup and return the argument parser."""
    parser = argparse.ArgumentParser(
        description='Generate a SonarQube users or secrets report as CSV.'
    )
    parser.add_argument(
        'arguments',
        nargs='*',
        metavar='TOKEN URL OUTPUT MODE',
        help='SonarQube token (ideally generated by an admin), base URL of your SonarQube '
             'instance, file the results are written to, and either "users" or "secrets"'
    )
    parser.add_argument(
        '--login-days',
        type=int,
        default=os.environ.get('SONAR_LOGIN_DAYS', str(DAYS_SINCE_SQ_LOGIN)),
        help='Users must have logged into SonarQube within this many days '
             '(or set SONAR_LOGIN_DAYS env var, default: 90)'
    )
    parser.add_argument(
        '--lint-days',
        type=int,
        default=os.environ.get('SONAR_LINT_DAYS', str(DAYS_SINCE_SL_CONNECTION)),
        help='Users must not have connected SonarLint within this many days '
             '(or set SONAR_LINT_DAYS env var, default: 90)'
    )
    parser.add_argument(
        '--http-errors',
        choices=[ABORT, SKIP],
        default=ABORT,
        help='What to do when the server answers with a non-200 status (default: abort)'
    )
    parser.add_argument(
        '--network-errors',
        choices=[ABORT, SKIP],
        default=SKIP,
        help='What to do when a request fails to complete (default: skip)'
    )
    parser.add_argument(
        '--log-format',
        choices=['text', 'json'],
        default='text',
        help='Log output format (default: text)'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable debug logging'
    )
    return parser


def run_report(config: ReportConfig, mode: str, output_path: str) -> bool:
    """
    Build the requested report and write it.

    Returns:
        False if the mode is not recognized and nothing was written
    """
    client = SonarQubeClient(config)
    mode = mode.lower()
    if mode == 'users':
        users = client.list_users()
        write_report(output_path, USERS_HEADER, (user.to_row() for user in users))
    elif mode == 'secrets':
        secrets = client.find_secrets()
        write_report(output_path, SECRETS_HEADER, (secret.to_row() for secret in secrets))
    else:
        logger.debug(f"Unrecognized mode {mode!r}, nothing to do")
        return False
    return True


def main(argv: Sequence[str] = None) -> int:
    """Main entry point for the script."""
    argv = list(sys.argv[1:] if argv is None else argv)
    args = setup_argument_parser().parse_intermixed_args(argv)
    if len(args.arguments) != 4:
        print(USAGE)
        return 0
    token, url, output_path, mode = args.arguments
    setup_logging(args.log_format, args.verbose)

    config = ReportConfig(
        token=token,
        base_url=url,
        login_days=args.login_days,
        lint_days=args.lint_days,
        http_errors=args.http_errors,
        network_errors=args.network_errors,
    )
    try:
        if run_report(config, mode, output_path):
            print(f"Report successfully generated: {output_path}")
    except SonarApiError as e:
        logger.error(f"Report aborted: {e}")
        return 1
    except ReportWriteError:
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
