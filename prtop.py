#!/usr/bin/env python3
# prtop: Live terminal dashboard for GitHub pull request checks
#
# Hotkeys
#   up/down, k/j  move selection
#   enter         picker: monitor the selected PR / viewer: open check details
#   esc           back to the PR picker (only when started without a PR)
#   s             toggle hiding skipped checks
#   r             refresh now
#   q, ctrl-c     quit
#
# Usage
#   prtop                                          # pick from your recent open PRs
#   prtop https://github.com/owner/repo/pull/123
#   prtop owner/repo 123
#   prtop --interval 10 owner/repo 123
#
# Config (optional, --config PATH)
#   interval: 5              # seconds between automatic refreshes
#   hide_skipped: true
#   limit: 5                 # PRs listed in the picker
#   transport: gh            # gh (GitHub CLI) or api (GraphQL + GITHUB_TOKEN)
#   log_level: ERROR
#   log_path: ~/.prtop.log
#   style:
#     status.pass: "bold #5fd75f"
#
# Environment
# - GITHUB_TOKEN (only for transport: api; .env TOKEN/GITHUB_TOKEN also read)
# - MOCK_FETCH=1 (optional offline demo)

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import json
import math
import os
import shutil
import subprocess
import sys
import threading
import webbrowser
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.application.current import get_app
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
import logging
from logging.handlers import RotatingFileHandler


logger = logging.getLogger('prtop')


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# -----------------------------
# Config
# -----------------------------
TRANSPORTS = ("gh", "api")


@dataclass
class Config:
    interval: float = 5.0
    hide_skipped: bool = True
    limit: int = 5
    transport: str = "gh"
    log_level: str = "ERROR"
    log_path: Optional[str] = None
    style: Dict[str, str] = field(default_factory=dict)


def is_positive_finite(value: float) -> bool:
    # rejects nan and inf as well as non-positive values
    return math.isfinite(value) and value > 0


def _positive_number(raw: dict, key: str) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not is_positive_finite(value):
        raise ValueError(f"Config: '{key}' must be positive.")
    return float(value)


def load_config(path: Optional[str]) -> Config:
    """Load the optional YAML config; no path (or an empty file) gives defaults."""
    cfg = Config()
    if not path:
        return cfg
    with open(os.path.expanduser(path), "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    if raw is None:
        return cfg
    if not isinstance(raw, dict):
        raise ValueError("Config: top level must be a mapping.")
    if "interval" in raw:
        cfg.interval = _positive_number(raw, "interval")
    if "limit" in raw:
        limit = raw.get("limit")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValueError("Config: 'limit' must be a positive integer.")
        cfg.limit = limit
    if "hide_skipped" in raw:
        if not isinstance(raw["hide_skipped"], bool):
            raise ValueError("Config: 'hide_skipped' must be true or false.")
        cfg.hide_skipped = raw["hide_skipped"]
    transport = str(raw.get("transport", cfg.transport)).strip().lower()
    if transport not in TRANSPORTS:
        raise ValueError(f"Config: 'transport' must be one of {', '.join(TRANSPORTS)}.")
    cfg.transport = transport
    cfg.log_level = str(raw.get("log_level") or cfg.log_level)
    if raw.get("log_path"):
        cfg.log_path = os.path.expanduser(str(raw["log_path"]))
    overrides = raw.get("style") or {}
    if not isinstance(overrides, dict):
        raise ValueError("Config: 'style' must be a mapping of class name to style.")
    for key, value in overrides.items():
        if isinstance(key, str) and isinstance(value, str):
            cfg.style[key] = value
    return cfg


def setup_logging(level: str = 'ERROR', path: Optional[str] = None) -> logging.Logger:
    """File logger for diagnostics; the terminal belongs to the full-screen UI."""
    if path is None:
        path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'prtop.log')
    # Always reset handlers so the CLI level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    fh.setLevel(getattr(logging, str(level).upper(), logging.ERROR))
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


def load_dotenv_token() -> Optional[str]:
    """Load TOKEN or GITHUB_TOKEN from a .env file (current dir or module dir) if present."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    k, v = line.split('=', 1)
                    k = k.strip()
                    v = v.strip().strip('"').strip("'")
                    if k in ("TOKEN", "GITHUB_TOKEN") and v:
                        return v
        except OSError:
            logger.warning("Unable to read %s", path, exc_info=True)
    return None


# -----------------------------
# Check model & status normalization
# -----------------------------
class CheckStatus(IntEnum):
    """Canonical check status; the numeric value is the display rank."""

    RUNNING = 0
    FAIL = 1
    PASS = 2
    SKIPPED = 3


_STATUS_TABLE: Dict[str, CheckStatus] = {
    "SUCCESS": CheckStatus.PASS,
    "PASS": CheckStatus.PASS,
    "FAILURE": CheckStatus.FAIL,
    "FAIL": CheckStatus.FAIL,
    "ERROR": CheckStatus.FAIL,
    "TIMED_OUT": CheckStatus.FAIL,
    "ACTION_REQUIRED": CheckStatus.FAIL,
    "STARTUP_FAILURE": CheckStatus.FAIL,
    "IN_PROGRESS": CheckStatus.RUNNING,
    "RUNNING": CheckStatus.RUNNING,
    "PENDING": CheckStatus.RUNNING,
    "QUEUED": CheckStatus.RUNNING,
    "WAITING": CheckStatus.RUNNING,
    "REQUESTED": CheckStatus.RUNNING,
    "SKIPPED": CheckStatus.SKIPPED,
    "CANCELLED": CheckStatus.SKIPPED,
    "NEUTRAL": CheckStatus.SKIPPED,
    "STALE": CheckStatus.SKIPPED,
}

# StatusContext records never report completion
NO_DURATION = "???"


def normalize_status(raw: Optional[str]) -> CheckStatus:
    """Map any upstream status/conclusion/state string onto CheckStatus.

    Empty and unknown values count as RUNNING so nothing unfamiliar is hidden.
    """
    key = (raw or "").strip().upper()
    return _STATUS_TABLE.get(key, CheckStatus.RUNNING)


def pick_raw_status(item: Dict[str, object]) -> str:
    """Return the first non-empty of conclusion, status, state."""
    for key in ("conclusion", "status", "state"):
        value = item.get(key)
        if value:
            return str(value)
    return ""


@dataclass
class Check:
    name: str
    status: CheckStatus
    duration: str = "-"
    details_url: str = ""
    started_at: Optional[dt.datetime] = None
    completed: bool = False


@dataclass
class PRData:
    title: str
    head_ref_name: str
    url: str
    checks: List[Check] = field(default_factory=list)


@dataclass
class PRSummary:
    repo: str
    number: int
    title: str
    url: str = ""
    updated_at: str = ""


def sort_checks(checks: List[Check]) -> List[Check]:
    """Running first, then failed, passed, skipped; by name inside each group."""
    return sorted(checks, key=lambda c: (int(c.status), c.name))


# -----------------------------
# Durations & timestamps
# -----------------------------
def _parse_iso(s: Optional[str]) -> Optional[dt.datetime]:
    raw = (s or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        value = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value


def format_duration(seconds: int) -> str:
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    if minutes > 0:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


def parse_duration(started_at: Optional[str], completed_at: Optional[str]) -> Tuple[str, Optional[dt.datetime], bool]:
    """Return (display duration, start timestamp, completed flag)."""
    start = _parse_iso(started_at)
    if start is None:
        return "-", None, False
    end = _parse_iso(completed_at)
    completed = end is not None
    if end is None:
        end = _utcnow()
    return format_duration((end - start).total_seconds()), start, completed


def live_duration(check: Check, now: dt.datetime) -> str:
    """Duration to display; running checks are measured against now."""
    if not check.completed and check.started_at is not None:
        return format_duration((now - check.started_at).total_seconds())
    return check.duration


def relative_time(updated_at: Optional[str], now: Optional[dt.datetime] = None) -> str:
    stamp = _parse_iso(updated_at)
    if stamp is None:
        return ""
    delta = ((now or _utcnow()) - stamp).total_seconds()
    if delta < 60:
        return "just now"
    if delta < 3600:
        return f"{int(delta // 60)}m ago"
    if delta < 86400:
        return f"{int(delta // 3600)}h ago"
    return f"{int(delta // 86400)}d ago"


# -----------------------------
# Payload parsing (gh CLI JSON shape)
# -----------------------------
def parse_check_item(item: Dict[str, object]) -> Check:
    name = str(item.get("name") or item.get("context") or "unknown")
    workflow = item.get("workflowName")
    if workflow:
        name = f"{name} ({workflow})"
    status = normalize_status(pick_raw_status(item))

    completed_at = str(item.get("completedAt") or "")
    if completed_at.startswith("0001"):
        completed_at = ""
    duration, started_at, completed = parse_duration(str(item.get("startedAt") or ""), completed_at)

    if item.get("__typename") == "StatusContext" and status is not CheckStatus.RUNNING:
        completed = True
        duration = NO_DURATION

    return Check(
        name=name,
        status=status,
        duration=duration,
        details_url=str(item.get("detailsUrl") or item.get("targetUrl") or ""),
        started_at=started_at,
        completed=completed,
    )


def parse_pr_payload(payload: object) -> PRData:
    if not isinstance(payload, dict):
        raise ValueError("expected a JSON object")
    items = payload.get("statusCheckRollup") or []
    checks = [parse_check_item(it) for it in items if isinstance(it, dict)]
    return PRData(
        title=str(payload.get("title") or ""),
        head_ref_name=str(payload.get("headRefName") or ""),
        url=str(payload.get("url") or ""),
        checks=sort_checks(checks),
    )


def parse_pr_list(payload: object) -> List[PRSummary]:
    if not isinstance(payload, list):
        raise ValueError("expected a JSON array")
    prs: List[PRSummary] = []
    for it in payload:
        if not isinstance(it, dict):
            continue
        repo = (it.get("repository") or {}).get("nameWithOwner") or ""
        prs.append(PRSummary(
            repo=str(repo),
            number=int(it.get("number") or 0),
            title=str(it.get("title") or ""),
            url=str(it.get("url") or ""),
            updated_at=str(it.get("updatedAt") or ""),
        ))
    return prs


# -----------------------------
# Fetchers
# -----------------------------
class FetchError(RuntimeError):
    """A fetch failed; the message is shown to the user as-is."""


class ListFetchError(FetchError):
    pass


class DataFetchError(FetchError):
    pass


# gh children still running; killed on quit so worker threads return promptly
_active_procs: Set[subprocess.Popen] = set()
_active_lock = threading.Lock()


def _run_gh(args: List[str], error_cls: type) -> str:
    try:
        proc = subprocess.Popen(["gh", *args], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except OSError as exc:
        raise error_cls(f"gh CLI error: {exc}") from exc
    with _active_lock:
        _active_procs.add(proc)
    try:
        out, err = proc.communicate()
    finally:
        with _active_lock:
            _active_procs.discard(proc)
    if proc.returncode != 0:
        raise error_cls(f"gh CLI error: {(err or '').strip()}")
    return out


def kill_active_fetches() -> int:
    """Kill every running gh child; returns how many were signalled."""
    with _active_lock:
        procs = list(_active_procs)
    for proc in procs:
        try:
            proc.kill()
        except OSError as exc:
            logger.debug("gh child %s already gone: %s", getattr(proc, 'pid', '?'), exc)
    return len(procs)


def fetch_pr_list(limit: int = 5) -> List[PRSummary]:
    """Your most recently updated open PRs, via `gh search prs`."""
    out = _run_gh([
        "search", "prs",
        "--author=@me", "--state=open", "--sort=updated",
        f"--limit={limit}",
        "--json", "number,title,repository,url,updatedAt",
    ], ListFetchError)
    try:
        return parse_pr_list(json.loads(out))
    except (ValueError, TypeError, AttributeError) as exc:
        raise ListFetchError(f"failed to parse gh output: {exc}") from exc


def fetch_pr_data(repo: str, number: str) -> PRData:
    out = _run_gh([
        "pr", "view", str(number),
        "--repo", repo,
        "--json", "statusCheckRollup,title,headRefName,url",
    ], DataFetchError)
    try:
        return parse_pr_payload(json.loads(out))
    except (ValueError, TypeError, AttributeError) as exc:
        raise DataFetchError(f"failed to parse gh output: {exc}") from exc


GQL_SEARCH_PRS = """
query($q:String!, $n:Int!){
  search(query:$q, type:ISSUE, first:$n){
    nodes{
      ... on PullRequest{
        number title url updatedAt
        repository{ nameWithOwner }
      }
    }
  }
}
"""

GQL_PR_CHECKS = """
query($owner:String!, $name:String!, $number:Int!){
  repository(owner:$owner, name:$name){
    pullRequest(number:$number){
      title headRefName url
      commits(last:1){
        nodes{
          commit{
            statusCheckRollup{
              contexts(first:100){
                nodes{
                  __typename
                  ... on CheckRun{
                    name status conclusion startedAt completedAt detailsUrl
                    checkSuite{ workflowRun{ workflow{ name } } }
                  }
                  ... on StatusContext{
                    context state targetUrl createdAt
                  }
                }
              }
            }
          }
        }
      }
    }
  }
}
"""


def _session(token: str) -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = f"Bearer {token}"
    s.headers["Accept"] = "application/vnd.github+json"
    return s


def _graphql(session: requests.Session, query: str, variables: Dict[str, object], error_cls: type) -> Dict:
    try:
        r = session.post("https://api.github.com/graphql", json={"query": query, "variables": variables}, timeout=60)
        r.raise_for_status()
        resp = r.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("GraphQL request failed: %s", exc)
        raise error_cls(f"GitHub API error: {exc}") from exc
    errs = resp.get("errors") or []
    if errs:
        raise error_cls("GitHub API error: " + "; ".join(str(e.get("message", e)) for e in errs))
    return resp.get("data") or {}


def fetch_pr_list_api(session: requests.Session, limit: int = 5) -> List[PRSummary]:
    data = _graphql(session, GQL_SEARCH_PRS, {"q": "is:pr is:open author:@me sort:updated-desc", "n": limit}, ListFetchError)
    nodes = ((data.get("search") or {}).get("nodes")) or []
    return parse_pr_list([n for n in nodes if isinstance(n, dict) and n.get("number")])


def _rollup_item_from_graphql(node: Dict[str, object]) -> Dict[str, object]:
    """Reshape a GraphQL rollup context into the `gh pr view --json` item shape."""
    item = dict(node)
    if node.get("__typename") == "CheckRun":
        suite = node.get("checkSuite") or {}
        run = suite.get("workflowRun") or {}
        item["workflowName"] = (run.get("workflow") or {}).get("name") or ""
        item.pop("checkSuite", None)
    elif node.get("__typename") == "StatusContext":
        item["startedAt"] = node.get("createdAt") or ""
    return item


def fetch_pr_data_api(session: requests.Session, repo: str, number: str) -> PRData:
    owner, _, name = repo.partition("/")
    if not owner or not name:
        raise DataFetchError(f"invalid repository: {repo!r}")
    try:
        num = int(number)
    except (TypeError, ValueError) as exc:
        raise DataFetchError(f"invalid PR number: {number!r}") from exc
    data = _graphql(session, GQL_PR_CHECKS, {"owner": owner, "name": name, "number": num}, DataFetchError)
    pr = ((data.get("repository") or {}).get("pullRequest"))
    if not pr:
        raise DataFetchError(f"pull request not found: {repo}#{number}")
    items: List[Dict[str, object]] = []
    for commit_node in ((pr.get("commits") or {}).get("nodes") or []):
        rollup = ((commit_node or {}).get("commit") or {}).get("statusCheckRollup") or {}
        for node in ((rollup.get("contexts") or {}).get("nodes") or []):
            if isinstance(node, dict):
                items.append(_rollup_item_from_graphql(node))
    return parse_pr_payload({
        "title": pr.get("title"),
        "headRefName": pr.get("headRefName"),
        "url": pr.get("url"),
        "statusCheckRollup": items,
    })


@dataclass
class Fetchers:
    fetch_list: Callable[[], List[PRSummary]]
    fetch_data: Callable[[str, str], PRData]
    close: Optional[Callable[[], None]] = None


def build_fetchers(cfg: Config, token: Optional[str] = None) -> Fetchers:
    if os.environ.get('MOCK_FETCH') == '1':
        logger.info("MOCK_FETCH enabled; serving mock PR data")
        return Fetchers(fetch_list=generate_mock_pr_list, fetch_data=generate_mock_pr_data)
    if cfg.transport == "api":
        session = _session(token) if token else None

        def fetch_list() -> List[PRSummary]:
            if session is None:
                raise ListFetchError("GITHUB_TOKEN is not set")
            return fetch_pr_list_api(session, cfg.limit)

        def fetch_data(repo: str, number: str) -> PRData:
            if session is None:
                raise DataFetchError("GITHUB_TOKEN is not set")
            return fetch_pr_data_api(session, repo, number)

        return Fetchers(fetch_list=fetch_list, fetch_data=fetch_data,
                        close=session.close if session is not None else None)
    return Fetchers(fetch_list=lambda: fetch_pr_list(cfg.limit), fetch_data=fetch_pr_data)


def open_url(url: str) -> None:
    """Open a URL in the browser, detached; failures are only logged."""
    if sys.platform == "darwin":
        cmd: Optional[List[str]] = ["open", url]
    elif shutil.which("xdg-open"):
        cmd = ["xdg-open", url]
    else:
        cmd = None
    try:
        if cmd is None:
            webbrowser.open(url)
            return
        subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, start_new_session=True)
    except (OSError, webbrowser.Error) as exc:
        logger.warning("Unable to open %s: %s", url, exc)


# -----------------------------
# Session engine
# -----------------------------
# header, title, branch, blank, summary, blank, table header, footer
CHROME_ROWS = 8
# picker: title, subtitle, blank and footer; each PR takes repo, title and a blank line
PICKER_CHROME_ROWS = 4
PICKER_ROW_HEIGHT = 3

KEY_UP = "up"
KEY_DOWN = "down"
KEY_ENTER = "enter"
KEY_BACK = "back"
KEY_TOGGLE_SKIPPED = "toggle_skipped"
KEY_REFRESH = "refresh"
KEY_QUIT = "quit"


class Mode(Enum):
    SELECTING = "selecting"
    VIEWING = "viewing"


@dataclass(frozen=True)
class KeyPress:
    key: str


@dataclass(frozen=True)
class ListFetched:
    prs: Optional[List[PRSummary]] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class DataFetched:
    repo: str
    number: str
    data: Optional[PRData] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Tick:
    generation: int = 0


@dataclass(frozen=True)
class Resize:
    width: int
    height: int


Event = Union[KeyPress, ListFetched, DataFetched, Tick, Resize]


@dataclass(frozen=True)
class FetchList:
    pass


@dataclass(frozen=True)
class FetchData:
    repo: str
    number: str


@dataclass(frozen=True)
class StartTimer:
    interval: float
    generation: int = 0


@dataclass(frozen=True)
class OpenURL:
    url: str


@dataclass(frozen=True)
class Quit:
    pass


Command = Union[FetchList, FetchData, StartTimer, OpenURL, Quit]


@dataclass
class SessionState:
    mode: Mode
    interval: float
    repo: str = ""
    number: str = ""
    pr_data: Optional[PRData] = None
    error: Optional[str] = None
    selected: int = 0
    scroll_offset: int = 0
    hide_skipped: bool = True
    width: int = 0
    height: int = 0
    prs: List[PRSummary] = field(default_factory=list)
    loading: bool = False
    can_go_back: bool = False
    # when the current pr_data was applied; shown while an error covers it
    fetched_at: Optional[dt.datetime] = None
    # ticks from timers armed before the last entry into VIEWING are dropped
    timer_generation: int = 0
    terminated: bool = False

    def filtered_checks(self) -> List[Check]:
        if self.pr_data is None:
            return []
        if not self.hide_skipped:
            return list(self.pr_data.checks)
        return [c for c in self.pr_data.checks if c.status is not CheckStatus.SKIPPED]

    def hidden_count(self) -> int:
        if self.pr_data is None:
            return 0
        return len(self.pr_data.checks) - len(self.filtered_checks())

    def visible_rows(self) -> int:
        """Checks (viewer) or PRs (picker) that fit between the fixed chrome."""
        if self.mode is Mode.SELECTING:
            return max(1, (self.height - PICKER_CHROME_ROWS) // PICKER_ROW_HEIGHT)
        return max(1, self.height - CHROME_ROWS)

    def active_length(self) -> int:
        if self.mode is Mode.SELECTING:
            return len(self.prs)
        return len(self.filtered_checks())


class SessionEngine:
    """Owns SessionState and applies one event at a time.

    handle() never performs I/O: it mutates the state and returns the
    commands the host loop should run (fetches, timers, opening a URL,
    quitting). Results come back later as ListFetched/DataFetched events.
    """

    def __init__(self, state: SessionState, clock: Optional[Callable[[], dt.datetime]] = None):
        self.state = state
        self._clock = clock or _utcnow

    @classmethod
    def for_pr(cls, repo: str, number: str, interval: float, hide_skipped: bool = True,
               clock: Optional[Callable[[], dt.datetime]] = None) -> "SessionEngine":
        state = SessionState(mode=Mode.VIEWING, interval=interval, repo=repo, number=str(number),
                             hide_skipped=hide_skipped)
        return cls(state, clock)

    @classmethod
    def for_picker(cls, interval: float, hide_skipped: bool = True,
                   clock: Optional[Callable[[], dt.datetime]] = None) -> "SessionEngine":
        state = SessionState(mode=Mode.SELECTING, interval=interval, hide_skipped=hide_skipped,
                             loading=True, can_go_back=True)
        return cls(state, clock)

    def start(self) -> List[Command]:
        if self.state.mode is Mode.SELECTING:
            return [FetchList()]
        return self._enter_viewing(self.state.repo, self.state.number)

    def handle(self, event: Event) -> List[Command]:
        if self.state.terminated:
            return []
        if isinstance(event, KeyPress):
            return self._on_key(event.key)
        if isinstance(event, ListFetched):
            return self._on_list(event)
        if isinstance(event, DataFetched):
            return self._on_data(event)
        if isinstance(event, Tick):
            return self._on_tick(event)
        if isinstance(event, Resize):
            self.state.width = event.width
            self.state.height = event.height
            self._follow_selection()
            return []
        raise TypeError(f"Unsupported event: {event!r}")

    # --- transitions

    def _enter_viewing(self, repo: str, number: str) -> List[Command]:
        st = self.state
        st.mode = Mode.VIEWING
        st.repo = repo
        st.number = str(number)
        st.selected = 0
        st.scroll_offset = 0
        st.pr_data = None
        st.error = None
        st.fetched_at = None
        st.loading = False
        st.timer_generation += 1
        logger.debug("Viewing %s#%s", st.repo, st.number)
        return [FetchData(st.repo, st.number), StartTimer(st.interval, st.timer_generation)]

    def _enter_selecting(self) -> List[Command]:
        st = self.state
        st.mode = Mode.SELECTING
        st.selected = 0
        st.scroll_offset = 0
        st.pr_data = None
        st.error = None
        st.fetched_at = None
        st.loading = True
        st.timer_generation += 1
        logger.debug("Back to PR picker")
        return [FetchList()]

    def _on_key(self, key: str) -> List[Command]:
        st = self.state
        if key == KEY_QUIT:
            st.terminated = True
            return [Quit()]
        if key == KEY_UP:
            self._move(-1)
            return []
        if key == KEY_DOWN:
            self._move(1)
            return []
        if key == KEY_REFRESH:
            if st.mode is Mode.SELECTING:
                st.loading = True
                return [FetchList()]
            return [FetchData(st.repo, st.number)]
        if key == KEY_ENTER:
            return self._on_enter()
        if key == KEY_BACK:
            if st.mode is Mode.VIEWING and st.can_go_back:
                return self._enter_selecting()
            return []
        if key == KEY_TOGGLE_SKIPPED:
            if st.mode is Mode.VIEWING:
                st.hide_skipped = not st.hide_skipped
                st.selected = 0
                st.scroll_offset = 0
            return []
        return []

    def _on_enter(self) -> List[Command]:
        st = self.state
        if st.mode is Mode.SELECTING:
            if not st.prs:
                return []
            pr = st.prs[st.selected]
            return self._enter_viewing(pr.repo, str(pr.number))
        checks = st.filtered_checks()
        if not checks:
            return []
        check = checks[st.selected]
        if not check.details_url:
            return []
        logger.debug("Opening details for %s: %s", check.name, check.details_url)
        return [OpenURL(check.details_url)]

    def _on_tick(self, event: Tick) -> List[Command]:
        st = self.state
        if st.mode is not Mode.VIEWING or event.generation != st.timer_generation:
            return []
        return [FetchData(st.repo, st.number), StartTimer(st.interval, st.timer_generation)]

    def _on_list(self, event: ListFetched) -> List[Command]:
        st = self.state
        if st.mode is not Mode.SELECTING:
            logger.debug("Dropping PR list result outside the picker")
            return []
        st.loading = False
        if event.error is not None:
            st.error = event.error
            return []
        st.prs = list(event.prs or [])
        st.error = None
        st.selected = 0
        st.scroll_offset = 0
        return []

    def _on_data(self, event: DataFetched) -> List[Command]:
        st = self.state
        if st.mode is not Mode.VIEWING or (event.repo, str(event.number)) != (st.repo, st.number):
            logger.debug("Dropping data for %s#%s", event.repo, event.number)
            return []
        if event.error is not None:
            st.error = event.error
            return []
        st.pr_data = event.data
        st.error = None
        st.fetched_at = self._clock()
        n = len(st.filtered_checks())
        if n == 0:
            st.selected = 0
            st.scroll_offset = 0
        else:
            st.selected = min(st.selected, n - 1)
            self._follow_selection()
        return []

    # --- selection & scrolling

    def _move(self, delta: int) -> None:
        st = self.state
        n = st.active_length()
        if n == 0:
            st.selected = 0
            return
        st.selected = max(0, min(n - 1, st.selected + delta))
        self._follow_selection()

    def _follow_selection(self) -> None:
        st = self.state
        visible = st.visible_rows()
        if st.selected >= st.scroll_offset + visible:
            st.scroll_offset = st.selected - visible + 1
        elif st.selected < st.scroll_offset:
            st.scroll_offset = st.selected
        n = st.active_length()
        st.scroll_offset = max(0, min(st.scroll_offset, max(0, n - visible)))


# -----------------------------
# Rendering (fragments only)
# -----------------------------
BASE_STYLE: Dict[str, str] = {
    'header': 'bold #875fff',
    'bold': 'bold',
    'dim': '#8a8a8a',
    'error': 'bold #ff0000',
    'table.header': 'underline',
    'row.selected': 'reverse',
    'status.pass': 'bold #00af00',
    'status.fail': 'bold #ff0000',
    'status.running': 'bold #ffff00',
    'status.skipped': '#808080',
    'picker.repo': '#00afff',
    'picker.number': '#ff87ff',
    'picker.title': '#d0d0d0',
    'picker.updated': '#8a8a8a',
    'picker.marker': 'bold #5fffd7',
    'picker.selected': 'bg:#303030',
}

_STATUS_CLASS = {
    CheckStatus.RUNNING: 'status.running',
    CheckStatus.FAIL: 'status.fail',
    CheckStatus.PASS: 'status.pass',
    CheckStatus.SKIPPED: 'status.skipped',
}

Fragments = List[Tuple[str, str]]


@dataclass
class RenderConfig:
    style: Dict[str, str] = field(default_factory=lambda: dict(BASE_STYLE))
    status_width: int = 12
    duration_width: int = 12
    clock: Callable[[], dt.datetime] = _utcnow

    @classmethod
    def from_config(cls, cfg: Config) -> "RenderConfig":
        style = dict(BASE_STYLE)
        style.update(cfg.style)
        return cls(style=style)


def _truncate(s: str, max_width: int) -> str:
    """Cut to max_width characters (raw length, not display cells)."""
    if max_width > 0 and len(s) > max_width:
        return s[:max_width]
    return s


def _clip_line(frags: Fragments, max_width: int) -> Fragments:
    """_truncate for one line made of several styled fragments."""
    if max_width <= 0:
        return frags
    out: Fragments = []
    room = max_width
    for style, text in frags:
        if room <= 0:
            break
        piece = text[:room]
        out.append((style, piece))
        room -= len(piece)
    return out


def _fmt_interval(seconds: float) -> str:
    return str(int(seconds)) if float(seconds).is_integer() else f"{seconds:g}"


def fragments_to_text(frags: Fragments) -> str:
    return "".join(text for _, text in frags)


def _pad_to_footer(frags: Fragments, height: int) -> None:
    used = sum(text.count("\n") for _, text in frags)
    frags.append(("", "\n" * max(0, height - 1 - used)))


def _error_block(state: SessionState, width: int) -> Fragments:
    frags: Fragments = [
        ("class:error", _truncate(f"Error: {state.error}", width)),
        ("", "\n\n"),
        ("class:dim", _truncate("r: retry | q: quit", width)),
    ]
    if state.fetched_at is not None:
        stamp = state.fetched_at.astimezone().strftime("%H:%M:%S")
        frags.append(("", "\n"))
        frags.append(("class:dim", _truncate(f"Last successful update: {stamp}", width)))
    return frags


def summary_line(checks: List[Check], hidden: int = 0) -> str:
    counts = {s: 0 for s in CheckStatus}
    for c in checks:
        counts[c.status] += 1
    summary = f"Checks: {len(checks)} total"
    parts = []
    for status, label in ((CheckStatus.PASS, "passed"), (CheckStatus.RUNNING, "running"),
                          (CheckStatus.FAIL, "failed"), (CheckStatus.SKIPPED, "skipped")):
        if counts[status]:
            parts.append(f"{counts[status]} {label}")
    if parts:
        summary += " - " + ", ".join(parts)
    if hidden:
        summary += f" ({hidden} hidden)"
    return summary


def render_selecting(state: SessionState, rcfg: RenderConfig) -> Fragments:
    if state.width <= 0:
        return [("", "Loading...")]
    width = state.width
    now = rcfg.clock()
    frags: Fragments = [
        ("class:header", _truncate("  prtop", width)), ("", "\n"),
        ("class:dim", _truncate("  Your recent open pull requests", width)), ("", "\n\n"),
    ]
    if state.error is not None:
        return frags + _error_block(state, width)
    if state.loading:
        frags.append(("", _truncate("Fetching your open PRs...", width)))
        return frags
    if not state.prs:
        frags += [("", _truncate("No open PRs found.", width)), ("", "\n\n"),
                  ("class:dim", _truncate("r: retry | q: quit", width))]
        return frags

    start = state.scroll_offset
    for idx in range(start, min(len(state.prs), start + state.visible_rows())):
        pr = state.prs[idx]
        selected = idx == state.selected
        bg = ",picker.selected" if selected else ""
        frags += _clip_line([
            (f"class:picker.marker{bg}", "▸ " if selected else "  "),
            (f"class:picker.repo{bg}", pr.repo),
            (f"class:picker.title{bg}", " "),
            (f"class:picker.number{bg}", f"#{pr.number}"),
        ], width)
        frags.append(("", "\n"))
        line = [(f"class:picker.title{bg}", "  " + pr.title)]
        updated = relative_time(pr.updated_at, now)
        if updated:
            line.append((f"class:picker.updated{bg}", f"  updated {updated}"))
        frags += _clip_line(line, width)
        frags.append(("", "\n\n"))

    _pad_to_footer(frags, state.height)
    frags.append(("class:dim", _truncate("up/down: select | enter: view PR | r: refresh | q: quit", width)))
    return frags


def render_viewing(state: SessionState, rcfg: RenderConfig) -> Fragments:
    if state.width <= 0:
        return [("", "Loading...")]
    width = state.width
    now = rcfg.clock()

    clock_text = now.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    header = f"PR Checks - {state.repo} #{state.number}"
    pad = max(1, width - len(header) - len(clock_text))
    frags: Fragments = [("class:bold", _truncate(header + " " * pad + clock_text, width)), ("", "\n")]

    if state.error is not None:
        return frags + _error_block(state, width)
    if state.pr_data is None:
        frags.append(("", "\n" + _truncate("Fetching PR data...", width)))
        return frags

    data = state.pr_data
    if data.title:
        frags += [("", _truncate(data.title, width)), ("", "\n")]
    info = f"Branch: {data.head_ref_name}"
    if data.url:
        info += f"    URL: {data.url}"
    frags += [("class:dim", _truncate(info, width)), ("", "\n\n")]

    if not data.checks:
        frags.append(("", _truncate("No checks reported.", width)))
        frags.append(("", "\n"))
    else:
        checks = state.filtered_checks()
        frags += [("class:bold", _truncate(summary_line(data.checks, state.hidden_count()), width)), ("", "\n\n")]
        status_w = rcfg.status_width
        dur_w = rcfg.duration_width
        table_hdr = "  " + "STATUS".ljust(status_w - 2) + "DURATION".ljust(dur_w) + "NAME"
        frags += [("class:table.header", _truncate(table_hdr, width)), ("", "\n")]

        name_w = max(0, width - status_w - dur_w)
        start = state.scroll_offset
        for idx in range(start, min(len(checks), start + state.visible_rows())):
            check = checks[idx]
            selected = idx == state.selected
            marker = "> " if selected else "  "
            status_cell = marker + check.status.name.ljust(status_w - 2)
            rest = live_duration(check, now).ljust(dur_w) + check.name[:name_w]
            status_class = _STATUS_CLASS[check.status]
            if selected:
                row = [(f"class:{status_class},row.selected", status_cell), ("class:row.selected", rest)]
            else:
                row = [(f"class:{status_class}", status_cell), ("", rest)]
            frags += _clip_line(row, width)
            frags.append(("", "\n"))

    _pad_to_footer(frags, state.height)
    footer = (f"Refresh: {_fmt_interval(state.interval)}s | up/down: select | enter: open | "
              f"s: {'show' if state.hide_skipped else 'hide'} skipped | r: refresh | ")
    if state.can_go_back:
        footer += "esc: back | "
    footer += "q: quit"
    frags.append(("class:dim", _truncate(footer, width)))
    return frags


def render(state: SessionState, rcfg: RenderConfig) -> Fragments:
    if state.mode is Mode.SELECTING:
        return render_selecting(state, rcfg)
    return render_viewing(state, rcfg)


# -----------------------------
# Host loop
# -----------------------------
def _guarded_fetch(func: Callable, error_cls: type, *args) -> Tuple[object, Optional[str]]:
    """Run a fetcher and fold any failure into (None, message)."""
    try:
        return func(*args), None
    except FetchError as exc:
        logger.warning("%s: %s", error_cls.__name__, exc)
        return None, str(exc)
    except Exception as exc:
        logger.exception("Unexpected failure in %s", getattr(func, '__name__', func))
        return None, str(error_cls(f"unexpected error: {exc}"))


class CommandRunner:
    """Executes engine commands and feeds their results back as events.

    Fetchers run on the runner's own thread pool rather than the loop's
    default executor, so shutting down never waits for a fetch in flight.
    """

    def __init__(self, engine: SessionEngine, fetchers: Fetchers, spawn: Callable,
                 on_change: Optional[Callable[[], None]] = None,
                 on_quit: Optional[Callable[[], None]] = None,
                 opener: Callable[[str], None] = open_url,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.engine = engine
        self.fetchers = fetchers
        self._spawn = spawn
        self._on_change = on_change
        self._on_quit = on_quit
        self._opener = opener
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix='prtop-fetch')
        self._closed = False

    def start(self) -> None:
        for command in self.engine.start():
            self.execute(command)
        self._changed()

    def dispatch(self, event: Event) -> None:
        for command in self.engine.handle(event):
            self.execute(command)
        self._changed()

    def execute(self, command: Command) -> None:
        if self._closed:
            return
        if isinstance(command, FetchList):
            logger.info("Fetching PR list")
            self._spawn(self._fetch_list())
        elif isinstance(command, FetchData):
            logger.info("Fetching checks for %s#%s", command.repo, command.number)
            self._spawn(self._fetch_data(command.repo, command.number))
        elif isinstance(command, StartTimer):
            self._spawn(self._timer(command.interval, command.generation))
        elif isinstance(command, OpenURL):
            self._opener(command.url)
        elif isinstance(command, Quit):
            self.shutdown()
            if self._on_quit is not None:
                self._on_quit()

    def shutdown(self) -> None:
        """Abandon in-flight fetches: kill gh children and stop the pool without waiting."""
        if self._closed:
            return
        self._closed = True
        killed = kill_active_fetches()
        if killed:
            logger.debug("Killed %d in-flight gh fetch(es)", killed)
        if self.fetchers.close is not None:
            self.fetchers.close()
        self._executor.shutdown(wait=False)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    async def _fetch_list(self) -> None:
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        prs, error = await loop.run_in_executor(self._executor, _guarded_fetch, self.fetchers.fetch_list, ListFetchError)
        if not self._closed:
            self.dispatch(ListFetched(prs=prs, error=error))

    async def _fetch_data(self, repo: str, number: str) -> None:
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        data, error = await loop.run_in_executor(self._executor, _guarded_fetch, self.fetchers.fetch_data, DataFetchError, repo, number)
        if not self._closed:
            self.dispatch(DataFetched(repo=repo, number=number, data=data, error=error))

    async def _timer(self, interval: float, generation: int) -> None:
        await asyncio.sleep(interval)
        self.dispatch(Tick(generation))


def run_once(engine: SessionEngine, fetchers: Fetchers) -> None:
    """Drive the engine synchronously until its initial fetch has landed."""
    pending = list(engine.start())
    while pending:
        command = pending.pop(0)
        if isinstance(command, FetchList):
            prs, error = _guarded_fetch(fetchers.fetch_list, ListFetchError)
            pending += engine.handle(ListFetched(prs=prs, error=error))
        elif isinstance(command, FetchData):
            data, error = _guarded_fetch(fetchers.fetch_data, DataFetchError, command.repo, command.number)
            pending += engine.handle(DataFetched(repo=command.repo, number=command.number, data=data, error=error))


def run_ui(engine: SessionEngine, fetchers: Fetchers, rcfg: RenderConfig) -> None:
    """Full-screen dashboard. Keys map to KeyPress events; see module header."""
    app: Optional[Application] = None

    def invalidate() -> None:
        if app is not None:
            app.invalidate()

    def quit_app() -> None:
        if app is not None and app.is_running:
            app.exit()

    def spawn(coro) -> None:
        app.create_background_task(coro)

    runner = CommandRunner(engine, fetchers, spawn=spawn, on_change=invalidate, on_quit=quit_app)

    def build_screen() -> Fragments:
        size = get_app().output.get_size()
        if (size.columns, size.rows) != (engine.state.width, engine.state.height):
            engine.handle(Resize(size.columns, size.rows))
        return render(engine.state, rcfg)

    kb = KeyBindings()
    key_map = [
        ('up', KEY_UP), ('k', KEY_UP),
        ('down', KEY_DOWN), ('j', KEY_DOWN),
        ('enter', KEY_ENTER),
        ('escape', KEY_BACK),
        ('s', KEY_TOGGLE_SKIPPED),
        ('r', KEY_REFRESH),
        ('q', KEY_QUIT), ('c-c', KEY_QUIT),
    ]
    for key_name, action in key_map:
        @kb.add(key_name, eager=key_name == 'escape')
        def _(event, action=action):
            runner.dispatch(KeyPress(action))

    control = FormattedTextControl(text=build_screen, focusable=True)
    window = Window(content=control, wrap_lines=False, always_hide_cursor=True)
    app = Application(layout=Layout(HSplit([window])), key_bindings=kb, full_screen=True,
                      style=Style.from_dict(rcfg.style))

    # Repaint once per second so live durations and the clock advance between fetches
    async def _ticker():
        while True:
            await asyncio.sleep(1)
            invalidate()

    def _pre_run() -> None:
        app.create_background_task(_ticker())
        runner.start()

    try:
        app.run(pre_run=_pre_run)
    finally:
        runner.shutdown()


# -----------------------------
# Utilities / Mock
# -----------------------------
def generate_mock_pr_list() -> List[PRSummary]:
    """Synthetic PR list for offline demo & testing."""
    now = _utcnow()
    return [
        PRSummary(
            repo=f"example/{name}",
            number=100 + i,
            title=f"Demo change {i}",
            url=f"https://github.com/example/{name}/pull/{100 + i}",
            updated_at=(now - dt.timedelta(minutes=7 * i * i)).isoformat(timespec="seconds"),
        )
        for i, name in enumerate(["api", "web", "infra"], start=1)
    ]


def generate_mock_pr_data(repo: str, number: str) -> PRData:
    now = _utcnow()
    base = f"https://github.com/{repo}/pull/{number}"
    specs = [
        ("build", "Tests", "SUCCESS", 150, 95),
        ("unit", "Tests", "FAILURE", 200, 160),
        ("integration", "Tests", "", 90, None),
        ("lint", "Lint", "SUCCESS", 300, 280),
        ("docs", "Docs", "SKIPPED", 300, 300),
        ("deploy-preview", "", "QUEUED", 20, None),
    ]
    items: List[Dict[str, object]] = []
    for name, workflow, conclusion, started_ago, completed_ago in specs:
        items.append({
            "__typename": "CheckRun",
            "name": name,
            "workflowName": workflow,
            "conclusion": conclusion,
            "status": "COMPLETED" if completed_ago is not None else "IN_PROGRESS",
            "startedAt": (now - dt.timedelta(seconds=started_ago)).isoformat(),
            "completedAt": (now - dt.timedelta(seconds=completed_ago)).isoformat() if completed_ago is not None else "",
            "detailsUrl": f"{base}/checks?name={name}",
        })
    items.append({
        "__typename": "StatusContext",
        "context": "ci/jenkins",
        "state": "SUCCESS",
        "targetUrl": "https://jenkins.example.com/job/1",
    })
    return parse_pr_payload({
        "title": f"Demo pull request #{number}",
        "headRefName": "feature/demo",
        "url": base,
        "statusCheckRollup": items,
    })


# -----------------------------
# CLI
# -----------------------------
def parse_pr_url(url: str) -> Optional[Tuple[str, str]]:
    """Split https://github.com/owner/repo/pull/123 into ("owner/repo", "123")."""
    parts = url.rstrip("/").split("/")
    if len(parts) < 7 or parts[2] != "github.com" or parts[5] != "pull" or not parts[6]:
        return None
    return f"{parts[3]}/{parts[4]}", parts[6]


def parse_target(target: List[str]) -> Optional[Tuple[str, str]]:
    """None means picker mode; raises ValueError for unusable arguments."""
    if not target:
        return None
    if len(target) == 1:
        parsed = parse_pr_url(target[0])
        if parsed is None:
            raise ValueError(f"invalid PR URL: {target[0]}\nExpected format: https://github.com/owner/repo/pull/123")
        return parsed
    if len(target) == 2:
        return target[0], target[1]
    raise ValueError("too many arguments")


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="prtop",
        description="Live-updating terminal UI for GitHub PR check statuses.\n\n"
                    "When run with no arguments, shows your most recent open PRs to select from.",
        epilog="Examples:\n"
               "  prtop                                       # pick from recent PRs\n"
               "  prtop https://github.com/owner/repo/pull/123\n"
               "  prtop owner/repo 123\n"
               "  prtop --interval 10 owner/repo 123",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    ap.add_argument("target", nargs="*", metavar="PR-URL | owner/repo PR-number")
    ap.add_argument("--interval", type=float, help="Refresh interval in seconds (default 5)")
    ap.add_argument("--config", help="Path to YAML config")
    ap.add_argument("--log-level", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--transport", choices=TRANSPORTS, help="Fetch through the gh CLI or the GraphQL API")
    ap.add_argument("--limit", type=int, help="Number of PRs listed in the picker")
    ap.add_argument("--show-skipped", action="store_true", help="Start with skipped checks visible")
    ap.add_argument("--once", action="store_true", help="Print a single snapshot and exit (no UI)")
    return ap


def main(argv: Optional[List[str]] = None) -> None:
    ap = build_arg_parser()
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
        target = parse_target(args.target)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.target and len(args.target) > 2:
            ap.print_usage(sys.stderr)
        sys.exit(1)

    if args.interval is not None:
        if not is_positive_finite(args.interval):
            print("Error: --interval must be positive", file=sys.stderr)
            sys.exit(1)
        cfg.interval = args.interval
    if args.limit is not None:
        if args.limit < 1:
            print("Error: --limit must be at least 1", file=sys.stderr)
            sys.exit(1)
        cfg.limit = args.limit
    if args.transport:
        cfg.transport = args.transport
    if args.log_level:
        cfg.log_level = args.log_level
    if args.show_skipped:
        cfg.hide_skipped = False

    setup_logging(cfg.log_level, cfg.log_path)

    mock = os.environ.get('MOCK_FETCH') == '1'
    if cfg.transport == "gh" and not mock and shutil.which("gh") is None:
        print("Error: 'gh' CLI not found on PATH.", file=sys.stderr)
        print("Install it from https://cli.github.com/", file=sys.stderr)
        sys.exit(1)

    token = None
    if cfg.transport == "api":
        token = os.environ.get("GITHUB_TOKEN") or load_dotenv_token()
    fetchers = build_fetchers(cfg, token)

    if target is None:
        engine = SessionEngine.for_picker(cfg.interval, hide_skipped=cfg.hide_skipped)
    else:
        engine = SessionEngine.for_pr(target[0], target[1], cfg.interval, hide_skipped=cfg.hide_skipped)
    rcfg = RenderConfig.from_config(cfg)

    if args.once:
        size = shutil.get_terminal_size((100, 30))
        engine.handle(Resize(size.columns, size.lines))
        run_once(engine, fetchers)
        print(fragments_to_text(render(engine.state, rcfg)))
        if engine.state.error is not None:
            sys.exit(1)
        return

    run_ui(engine, fetchers, rcfg)


if __name__ == "__main__":
    main()
