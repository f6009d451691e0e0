#!/usr/bin/env python3
"""ContextBricks — 4-line Claude Code statusline with ANSI colors.

Line 1: [Model] repo(wt:worktree):branch subdir *↑ahead↓behind | +added/-removed
        Optional parts drop in order diff → subdir → worktree to fit the width.
Line 2: [commit] commit subject (truncated to width)
Line 3: Context bricks, used %, free tokens, session duration, session cost.
Line 4: Rate limit utilization (5h, 7d, sonnet, opus) with reset countdowns.

Config:  CONTEXTBRICKS_* env vars, ~/.claude/contextbricks.toml (optional)
Cache:   ~/.claude/.usage-cache.json (rate limits, 5 min)
Debug:   CONTEXTBRICKS_DEBUG=1 logs to stderr
"""

import sys, json, os, re, math, logging, subprocess, time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import NamedTuple, Optional

log = logging.getLogger("contextbricks")

# ═══════════════════════ CONFIG ═══════════════════════

MAX_STDIN_BYTES = 1024 * 1024   # Input ceiling
MAX_BODY_BYTES = 1024 * 1024    # Usage API response ceiling
GIT_TIMEOUT = 5
KEYCHAIN_TIMEOUT = 3
FETCH_TIMEOUT = 4
CACHE_TTL = 300                 # 5 min
DEFAULT_COLS = 80
DEFAULT_BRICKS = 30
DEFAULT_CONTEXT = 200_000
STATS_RESERVE = 35              # " 78% | 44k free | 1h5m | $12.90"
MIN_AUTO_BRICKS = 5
VSCODE_PADDING = 28             # "/ide for Visual Studio Code" + separator
LOW_CONTEXT_PCT = 10            # Host shows its auto-compact warning below this
LOW_CONTEXT_PADDING = 36        # "Context left until auto-compact: 9%" + separator

USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
USAGE_BETA = "oauth-2025-04-20"
KEYCHAIN_SERVICE = "Claude Code-credentials"

# Rate limit windows in display order: (payload key, label)
LIMIT_WINDOWS = (
    ("five_hour", "5h"),
    ("seven_day", "7d"),
    ("seven_day_sonnet", "sonnet"),
    ("seven_day_opus", "opus"),
)

SYM_BRICK = ("■", "□")  # Context bricks (used, free)
FALSY = ("0", "false", "no", "off")


@dataclass(frozen=True)
class Config:
    """Render settings, resolved once per invocation and passed everywhere."""

    home: str
    platform: str
    show_dir: bool = True
    bricks: int = DEFAULT_BRICKS
    show_limits: bool = True
    reset_exact: bool = True
    right_padding: int = 0
    width: int = DEFAULT_COLS
    term_program: str = ""
    cache_ttl: int = CACHE_TTL
    debug: bool = False

    @property
    def claude_dir(self):
        return Path(self.home) / ".claude"

    @property
    def cache_path(self):
        return self.claude_dir / ".usage-cache.json"

    @property
    def credentials_path(self):
        return self.claude_dir / ".credentials.json"


def env_flag(v, default):
    """Boolean setting: 0/false/no/off are false, anything else true."""
    if v is None or v == "":
        return default
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() not in FALSY


def env_int(v, default):
    """Positive integer setting, else default."""
    if isinstance(v, bool):
        return default
    if isinstance(v, int):
        return v if v > 0 else default
    s = str(v).strip() if v is not None else ""
    return int(s) if s.isdigit() and int(s) > 0 else default


def load_toml(path):
    """Load optional TOML config. Requires tomllib (3.11+) or tomli."""
    if not path.exists():
        return {}
    try:
        try:
            import tomllib
        except ImportError:
            import tomli as tomllib  # type: ignore
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, ValueError, ImportError) as e:
        log.debug("ignoring config %s: %s", path, e)
        return {}


def _section(cfg, name):
    s = cfg.get(name)
    return s if isinstance(s, dict) else {}


def detect_cols(env, stdout, configured=None):
    """Terminal width: explicit override, stdout tty, $COLUMNS, then 80."""
    w = env_int(env.get("CONTEXTBRICKS_WIDTH"), env_int(configured, 0))
    if w:
        return w
    try:
        if stdout is not None and stdout.isatty():
            c = os.get_terminal_size(stdout.fileno()).columns
            if c > 0:
                return c
    except (OSError, ValueError, AttributeError):
        pass
    return env_int(env.get("COLUMNS"), DEFAULT_COLS)


def load_config(env=None, home=None, platform=None, stdout=None):
    """Build the Config record. Env vars win over the TOML file, which wins over defaults."""
    env = os.environ if env is None else env
    home = home or os.path.expanduser("~")
    toml = load_toml(Path(home) / ".claude" / "contextbricks.toml")
    d = _section(toml, "display")
    c = _section(toml, "cache")

    return Config(
        home=home,
        platform=platform or sys.platform,
        show_dir=env_flag(env.get("CONTEXTBRICKS_SHOW_DIR"), env_flag(d.get("show_dir"), True)),
        bricks=env_int(env.get("CONTEXTBRICKS_BRICKS"), env_int(d.get("bricks"), DEFAULT_BRICKS)),
        show_limits=env_flag(env.get("CONTEXTBRICKS_SHOW_LIMITS"), env_flag(d.get("show_limits"), True)),
        reset_exact=env_flag(env.get("CONTEXTBRICKS_RESET_EXACT"), env_flag(d.get("reset_exact"), True)),
        right_padding=env_int(env.get("CONTEXTBRICKS_RIGHT_PADDING"), env_int(d.get("right_padding"), 0)),
        width=detect_cols(env, sys.stdout if stdout is None else stdout, d.get("width")),
        term_program=env.get("TERM_PROGRAM", ""),
        cache_ttl=env_int(env.get("CONTEXTBRICKS_CACHE_TTL"), env_int(c.get("ttl"), CACHE_TTL)),
        debug=env_flag(env.get("CONTEXTBRICKS_DEBUG"), False),
    )

# ═══════════════════════ ANSI ═══════════════════════

R  = "\033[0m"     # Reset
BD = "\033[1m"     # Bold
DM = "\033[2m"     # Dim
CY = "\033[1;36m"  # Bold cyan
GR = "\033[1;32m"  # Bold green
BU = "\033[1;34m"  # Bold blue
RD = "\033[1;31m"  # Bold red
YL = "\033[1;33m"  # Bold yellow
DW = "\033[2;37m"  # Dim white
GN = "\033[0;32m"  # Green
RN = "\033[0;31m"  # Red
CN = "\033[0;36m"  # Cyan
YN = "\033[0;33m"  # Yellow

# 256-color green(46) → yellow(226) → red(196), one stop per 10%
GRADIENT = (46, 82, 118, 154, 190, 226, 220, 214, 208, 202, 196)

ANSI_RE = re.compile(r"\033\[[0-9;]*m")


def strip_ansi(s):
    return ANSI_RE.sub("", s)


def visible_len(s):
    """Printed width of s, color codes excluded."""
    return len(strip_ansi(s))


def limit_color(pct):
    """Gradient color for a utilization percentage, clamped to 0-100."""
    p = max(0.0, min(100.0, num(pct)))
    return f"\033[38;5;{GRADIENT[min(len(GRADIENT) - 1, int(p / 10 + 0.5))]}m"

# ═══════════════════════ HELPERS ═══════════════════════

def getp(obj, path, default=None):
    """Walk a dotted path through nested dicts. Missing hop or null → default."""
    cur = obj
    for part in path.split("."):
        if not isinstance(cur, dict):
            return default
        cur = cur.get(part)
    return default if cur is None else cur


def num(v, default=0.0):
    """Coerce a JSON value to a finite float, else default."""
    if isinstance(v, bool):
        return default
    try:
        n = float(v)
    except (TypeError, ValueError):
        return default
    return n if math.isfinite(n) else default


def fmt_duration(ms):
    """Format duration: 0h12m, 1h5m."""
    m = max(0, int(ms)) // 60_000
    return f"{m // 60}h{m % 60}m"


def parse_iso(s):
    """Parse ISO 8601 to an aware datetime (UTC if no offset). Handles Z, fractional sec."""
    if not s or not isinstance(s, str):
        return None
    s = s.replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        # Older Pythons only take 3 or 6 fractional digits
        try:
            dt = datetime.fromisoformat(re.sub(r"\.\d+", "", s))
        except ValueError:
            return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def fmt_reset(resets_at, exact, now):
    """Time until reset. exact: 1h30m / 2d5h, approximate: 1h / 2d. Past → 0m."""
    dt = parse_iso(resets_at)
    if dt is None:
        return ""
    secs = (dt - now).total_seconds()
    if secs <= 0:
        return "0m"

    mins = int(secs // 60)
    hours, days = mins // 60, mins // 1440
    if mins < 60:
        return f"{mins}m"
    if hours < 24:
        return f"{hours}h{mins % 60}m" if exact and mins % 60 else f"{hours}h"
    return f"{days}d{hours % 24}h" if exact and hours % 24 else f"{days}d"


def tilde_path(path, home):
    """Display path with the home directory shortened to ~."""
    p = path.replace("\\", "/")
    h = home.replace("\\", "/").rstrip("/")
    if h and (p == h or p.startswith(h + "/")):
        return "~" + p[len(h):]
    return p

# ═══════════════════════ INPUT ═══════════════════════

@dataclass(frozen=True)
class Session:
    """Session telemetry for one render, parsed from the stdin JSON."""

    model: str = "Claude"
    current_dir: str = ""
    lines_added: int = 0
    lines_removed: int = 0
    duration_ms: int = 0
    cost_usd: float = 0.0
    context_size: int = DEFAULT_CONTEXT
    used_pct: Optional[float] = None
    remaining_pct: Optional[float] = None
    input_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    mock_limits: Optional[dict] = None

    @classmethod
    def from_json(cls, doc):
        model = getp(doc, "model.display_name")
        model = model.replace("Claude ", "", 1) if isinstance(model, str) and model else "Claude"
        cwd = getp(doc, "workspace.current_dir")
        used = getp(doc, "context_window.used_percentage")
        rem = getp(doc, "context_window.remaining_percentage")
        mock = getp(doc, "_mock_rate_limits")

        def count(path):
            return int(num(getp(doc, path)))

        return cls(
            model=model,
            current_dir=cwd if isinstance(cwd, str) else "",
            lines_added=count("cost.total_lines_added"),
            lines_removed=count("cost.total_lines_removed"),
            duration_ms=count("cost.total_duration_ms"),
            cost_usd=num(getp(doc, "cost.total_cost_usd")),
            context_size=count("context_window.context_window_size") or DEFAULT_CONTEXT,
            used_pct=None if used == "" or used is None else num(used),
            remaining_pct=None if rem == "" or rem is None else num(rem),
            input_tokens=count("context_window.current_usage.input_tokens"),
            cache_creation_tokens=count("context_window.current_usage.cache_creation_input_tokens"),
            cache_read_tokens=count("context_window.current_usage.cache_read_input_tokens"),
            mock_limits=mock if isinstance(mock, dict) and mock else None,
        )


def read_input(stream):
    """Read the stdin document. Returns (doc, None) or (None, diagnostic)."""
    try:
        raw = stream.read(MAX_STDIN_BYTES + 1)
    except (OSError, ValueError) as e:
        log.debug("stdin unreadable: %s", e)
        raw = b""
    if len(raw) > MAX_STDIN_BYTES:
        return None, "input too large"
    text = raw.decode("utf-8", errors="replace")
    if not text.strip():
        return None, "no input"
    try:
        return json.loads(text), None
    except ValueError:
        return None, "invalid JSON"

# ═══════════════════════ GIT ═══════════════════════

class CmdResult(NamedTuple):
    ok: bool
    out: str


def run_cmd(argv, cwd=None, timeout=GIT_TIMEOUT, input=None, env=None):
    """Run argv without a shell. Never raises; failures come back with ok=False."""
    try:
        r = subprocess.run(
            argv, cwd=cwd, input=input, env=env, capture_output=True,
            encoding="utf-8", errors="replace", timeout=timeout)
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        log.debug("%s failed: %s", argv[0], e)
        return CmdResult(False, "")
    return CmdResult(r.returncode == 0, r.stdout or "")


def run_capped(argv, input, limit, timeout):
    """Like run_cmd, but reads at most limit bytes of stdout.

    Anything longer kills the child and counts as a failure, so a runaway
    response never gets buffered whole.
    """
    try:
        with subprocess.Popen(argv, stdin=subprocess.PIPE, stdout=subprocess.PIPE,
                              stderr=subprocess.DEVNULL) as p:
            p.stdin.write(input.encode("utf-8"))
            p.stdin.close()
            out = p.stdout.read(limit + 1)
            if len(out) > limit:
                p.kill()
            try:
                rc = p.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                p.kill()
                raise
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        log.debug("%s failed: %s", argv[0], e)
        return CmdResult(False, "")
    if len(out) > limit:
        log.debug("%s output over %d bytes", argv[0], limit)
        return CmdResult(False, "")
    return CmdResult(rc == 0, out.decode("utf-8", errors="replace"))


def git(args, cwd):
    """Stripped stdout of a git command, or "" on any failure."""
    r = run_cmd(["git", *args], cwd=cwd)
    return r.out.strip() if r.ok else ""


def resolve_cwd(candidate, fallback="."):
    """candidate if it is an existing directory, else the process cwd.

    fallback is used when the process cwd itself has been deleted.
    """
    if isinstance(candidate, str) and candidate and os.path.isdir(candidate):
        return candidate
    try:
        return os.getcwd()
    except OSError as e:
        log.debug("process cwd gone: %s", e)
        return fallback


@dataclass(frozen=True)
class RepoFacts:
    name: str = ""
    branch: str = ""
    worktree: str = ""   # Set when inside a linked worktree
    subdir: str = ""     # cwd relative to the repo root
    dirty: bool = False
    ahead: int = 0
    behind: int = 0
    commit: str = ""
    subject: str = ""

    @property
    def status(self):
        """Marker like *↑2↓1."""
        s = "*" if self.dirty else ""
        if self.ahead > 0:
            s += f"↑{self.ahead}"
        if self.behind > 0:
            s += f"↓{self.behind}"
        return s


def _count(s):
    return int(s) if s.isdigit() else 0


def collect_repo_facts(cwd, cfg):
    """Repo facts for cwd, or None outside a git work tree.

    Each git call degrades on its own: a failed command empties or zeroes
    only the fact it feeds.
    """
    git_dir = git(["rev-parse", "--git-dir"], cwd)
    if not git_dir:
        return None

    top = git(["rev-parse", "--show-toplevel"], cwd)
    name = os.path.basename(top) if top else ""
    branch = git(["branch", "--show-current"], cwd) or "detached"

    # Linked worktree: --git-dir differs from --git-common-dir
    worktree = ""
    common = git(["rev-parse", "--git-common-dir"], cwd)
    if common:
        gd = os.path.realpath(os.path.join(cwd, git_dir))
        cd = os.path.realpath(os.path.join(cwd, common))
        if gd != cd:
            worktree = name
            name = os.path.basename(os.path.dirname(cd))

    subdir = ""
    if cfg.show_dir and top:
        try:
            rel = os.path.relpath(os.path.realpath(cwd), os.path.realpath(top))
        except ValueError:  # different drives on Windows
            rel = "."
        rel = rel.replace(os.sep, "/")
        if rel != "." and not rel.startswith(".."):
            subdir = rel

    ahead = behind = 0
    upstream = git(["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"], cwd)
    if upstream:
        ahead = _count(git(["rev-list", "--count", f"{upstream}..HEAD"], cwd))
        behind = _count(git(["rev-list", "--count", f"HEAD..{upstream}"], cwd))

    return RepoFacts(
        name=name,
        branch=branch,
        worktree=worktree,
        subdir=subdir,
        dirty=bool(git(["status", "--porcelain"], cwd)),
        ahead=ahead,
        behind=behind,
        commit=git(["rev-parse", "--short", "HEAD"], cwd),
        subject=git(["log", "-1", "--pretty=format:%s"], cwd),
    )

# ═══════════════════════ LINE BUILDERS ═══════════════════════

class Line1Segments(NamedTuple):
    core: str       # [model] + repo name or ~/path
    worktree: str   # optional
    branch: str
    subdir: str     # optional
    status: str
    diff: str       # optional


class LayoutBudget(NamedTuple):
    width: int
    right_padding: int
    max_width: int


# Line 1 degradation: (worktree, subdir, diff) kept, in the order tried
DEGRADE_STEPS = (
    (True, True, True),
    (True, True, False),
    (True, False, False),
    (False, False, False),
)


def layout_budget(cfg, session):
    """Columns Line 1 may use once the host's right-aligned text is reserved."""
    pad = cfg.right_padding
    if cfg.term_program == "vscode":
        pad += VSCODE_PADDING
    if session.remaining_pct is not None and session.remaining_pct < LOW_CONTEXT_PCT:
        pad += LOW_CONTEXT_PADDING
    return LayoutBudget(cfg.width, pad, cfg.width - pad)


def line1_segments(session, repo, cwd, cfg):
    named = bool(repo and repo.name)
    core = f"{CY}[{session.model}]{R} "
    if named:
        core += f"{GR}{repo.name}{R}"
    elif cfg.show_dir:
        core += f"{DM}{tilde_path(cwd, cfg.home)}{R}"

    diff = ""
    if session.lines_added > 0 or session.lines_removed > 0:
        diff = f" | {GN}+{session.lines_added}{R}/{RN}-{session.lines_removed}{R}"

    return Line1Segments(
        core=core,
        worktree=f"{DM}(wt:{repo.worktree}){R}" if repo and repo.worktree else "",
        branch=f":{BU}{repo.branch}{R}" if named and repo.branch else "",
        subdir=f" {DM}{repo.subdir}{R}" if named and repo.subdir else "",
        status=f" {RD}{repo.status}{R}" if repo and repo.status else "",
        diff=diff,
    )


def compose_line1(segs, worktree=True, subdir=True, diff=True):
    s = segs.core
    if worktree:
        s += segs.worktree
    s += segs.branch
    if subdir:
        s += segs.subdir
    s += segs.status
    if diff:
        s += segs.diff
    return s


def fit_line1(segs, max_width):
    """Drop whole optional segments (diff, then subdir, then worktree) until
    the line fits. The core is never cut, even when it alone is too wide."""
    for wt, sub, diff in DEGRADE_STEPS:
        line = compose_line1(segs, wt, sub, diff)
        if visible_len(line) <= max_width:
            return line
    return line


def build_line1(session, repo, cwd, cfg):
    """Line 1: model, repo:branch, status, diff stats, fitted to the budget."""
    budget = layout_budget(cfg, session)
    return fit_line1(line1_segments(session, repo, cwd, cfg), budget.max_width)


def build_line2(repo, cfg):
    """Line 2: [hash] subject. Empty outside a repo or before the first commit."""
    if not repo or not repo.commit:
        return ""
    line = f"{YL}[{repo.commit}]{R}"
    if repo.subject:
        room = max(10, cfg.width - (len(repo.commit) + 3) - 3)  # "[hash] " and "..."
        msg = repo.subject if len(repo.subject) <= room else repo.subject[:room] + "..."
        line += f" {msg}"
    return line


def context_usage(session):
    """(percent used, used tokens, free tokens) for the context window.

    Prefers the host's percentage fields (truncated, not rounded); falls back
    to summing current_usage input + cache creation + cache read.
    """
    total = session.context_size
    if session.used_pct is not None:
        pct = int(session.used_pct)
        rem = int(session.remaining_pct) if session.remaining_pct is not None else 100 - pct
        return pct, total * pct // 100, total * rem // 100

    used = session.input_tokens + session.cache_creation_tokens + session.cache_read_tokens
    pct = used * 100 // total if total > 0 else 0
    return pct, used, total - used


def brick_total(cfg):
    """Configured brick count, capped so bricks + stats fit the terminal."""
    return max(1, min(cfg.bricks, max(MIN_AUTO_BRICKS, cfg.width - STATS_RESERVE)))


def brick_counts(used, total, bricks):
    """(used, free) bricks; always sums to bricks."""
    if total <= 0:
        return 0, bricks
    n = max(0, min(bricks, used * bricks // total))
    return n, bricks - n


def build_line3(session, cfg):
    """Line 3: [■■■□□□] pct% | free | duration | cost."""
    pct, used, free = context_usage(session)
    n_used, n_free = brick_counts(used, session.context_size, brick_total(cfg))

    line = "[" + f"{CN}{SYM_BRICK[0]}{R}" * n_used + f"{DW}{SYM_BRICK[1]}{R}" * n_free + "]"
    line += f" {BD}{pct}%{R}"
    line += f" | {GN}{max(0, free) // 1000}k free{R}"
    line += f" | {fmt_duration(session.duration_ms)}"
    if session.cost_usd > 0:
        line += f" | {YN}${session.cost_usd:.2f}{R}"
    return line

# ═══════════════════════ RATE LIMITS ═══════════════════════

def _token_from(raw):
    """claudeAiOauth.accessToken from a credentials JSON blob."""
    try:
        creds = json.loads(raw)
    except (TypeError, ValueError):
        return None
    tok = getp(creds, "claudeAiOauth.accessToken")
    return tok if isinstance(tok, str) and tok else None


def read_token(cfg):
    """OAuth token: macOS keychain first, then ~/.claude/.credentials.json."""
    if cfg.platform == "darwin":
        r = run_cmd(["security", "find-generic-password", "-s", KEYCHAIN_SERVICE, "-w"],
                    timeout=KEYCHAIN_TIMEOUT)
        if r.ok and r.out.strip():
            tok = _token_from(r.out.strip())
            if tok:
                return tok
            log.debug("keychain entry unusable, trying %s", cfg.credentials_path)

    try:
        raw = cfg.credentials_path.read_text(encoding="utf-8")
    except (OSError, ValueError) as e:
        log.debug("no credentials: %s", e)
        return None
    return _token_from(raw)


def read_cache(path):
    """Cached {timestamp, data} entry, or None when missing or corrupt."""
    try:
        entry = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.debug("usage cache unreadable: %s", e)
        return None
    if not isinstance(entry, dict) or not isinstance(entry.get("data"), dict):
        return None
    return entry


def cache_is_fresh(entry, ttl, now_ms):
    ts = entry.get("timestamp")
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        return False
    return 0 <= now_ms - ts < ttl * 1000


def write_cache(path, data, now_ms):
    """Persist {timestamp, data} owner-only (0600). Temp file + rename, so
    concurrent renders never read a half-written file."""
    tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"timestamp": now_ms, "data": data}, f)
        os.replace(tmp, path)
    except OSError as e:
        log.debug("usage cache write failed: %s", e)
        try:
            tmp.unlink()
        except OSError:
            pass


def fetch_usage(token):
    """GET the OAuth usage endpoint via curl. Returns the JSON object or None.

    Headers go in on stdin (-H @-) so the token never shows up in argv.
    """
    headers = (
        f"Authorization: Bearer {token}\n"
        f"anthropic-beta: {USAGE_BETA}\n"
        "Accept: application/json\n"
    )
    r = run_capped([
        "curl", "-sf", "--connect-timeout", "3", "--max-time", str(FETCH_TIMEOUT),
        "--max-filesize", str(MAX_BODY_BYTES), "-H", "@-", USAGE_URL,
    ], input=headers, limit=MAX_BODY_BYTES, timeout=FETCH_TIMEOUT + 1)

    if not r.ok or not r.out.strip():
        return None
    if len(r.out) > MAX_BODY_BYTES:
        log.debug("usage response too large (%d bytes)", len(r.out))
        return None
    try:
        data = json.loads(r.out)
    except ValueError:
        log.debug("usage response is not JSON")
        return None
    return data if isinstance(data, dict) else None


def is_usage_payload(data):
    """True for a real usage response, False for error bodies."""
    return isinstance(data, dict) and any(data.get(k) for k, _ in LIMIT_WINDOWS)


def get_rate_limits(session, cfg, now_ms=None):
    """Rate limit payload for Line 4, or None.

    mock payload → no token: None → fresh cache → live fetch (cached on
    success) → cache of any age → None.
    """
    if session.mock_limits is not None:
        return session.mock_limits

    token = read_token(cfg)
    if not token:
        return None

    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    cached = read_cache(cfg.cache_path)
    if cached and cache_is_fresh(cached, cfg.cache_ttl, now_ms):
        return cached["data"]

    data = fetch_usage(token)
    if is_usage_payload(data):
        write_cache(cfg.cache_path, data, now_ms)
        return data

    if cached:
        log.debug("usage fetch failed, using stale cache from %s", cached.get("timestamp"))
        return cached["data"]
    return None


def limit_segment(data, key, label, exact, now):
    """Segment like 5h:23% ~1h30m, or None when the window is absent."""
    win = data.get(key)
    if not isinstance(win, dict) or win.get("utilization") is None:
        return None
    pct = num(win["utilization"])
    seg = f"{DW}{label}:{R}{limit_color(pct)}{math.floor(pct + 0.5)}%{R}"
    reset = fmt_reset(win.get("resets_at"), exact, now)
    if reset:
        seg += f" {DM}~{reset}{R}"
    return seg


def build_line4(data, cfg, now=None):
    """Line 4: rate limit segments joined by |. Empty when there are none."""
    if not isinstance(data, dict):
        return ""
    now = now or datetime.now(timezone.utc)
    segs = (limit_segment(data, key, label, cfg.reset_exact, now) for key, label in LIMIT_WINDOWS)
    return " | ".join(s for s in segs if s)

# ═══════════════════════ MAIN ═══════════════════════

def setup_logging(cfg):
    """Debug log to stderr; stdout belongs to the statusline."""
    if not cfg.debug or log.handlers:
        return
    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(logging.Formatter("contextbricks %(levelname)s: %(message)s"))
    log.addHandler(h)
    log.setLevel(logging.DEBUG)


def render(doc, cfg):
    """All output lines for one parsed input document."""
    session = Session.from_json(doc)
    cwd = resolve_cwd(session.current_dir, cfg.home)
    repo = collect_repo_facts(cwd, cfg)

    # Line 1 — model, repo, status, diff
    try:
        l1 = build_line1(session, repo, cwd, cfg)
    except Exception:
        log.debug("line 1 failed", exc_info=True)
        l1 = f"{CY}[{session.model}]{R}"

    # Line 2 — last commit
    try:
        l2 = build_line2(repo, cfg)
    except Exception:
        log.debug("line 2 failed", exc_info=True)
        l2 = ""

    # Line 3 — context bricks
    try:
        l3 = build_line3(session, cfg)
    except Exception:
        log.debug("line 3 failed", exc_info=True)
        l3 = fmt_duration(session.duration_ms)

    # Line 4 — rate limits
    l4 = ""
    if cfg.show_limits:
        try:
            l4 = build_line4(get_rate_limits(session, cfg), cfg)
        except Exception:
            log.debug("line 4 failed", exc_info=True)

    return [line for line in (l1, l2, l3, l4) if line]


def main():
    cfg = load_config()
    setup_logging(cfg)

    # Bricks and separators are not representable in legacy codepages.
    reconfigure = getattr(sys.stdout, "reconfigure", None)
    if reconfigure is not None:
        try:
            reconfigure(encoding="utf-8")
        except (ValueError, OSError) as e:
            log.debug("cannot switch stdout to utf-8: %s", e)

    doc, err = read_input(sys.stdin.buffer)
    if err:
        print(f"ContextBricks: {err}")
        return

    for line in render(doc, cfg):
        print(line)

if __name__ == "__main__":
    main()
