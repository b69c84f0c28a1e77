#!/usr/bin/env python3
# lazyissues: terminal viewer for a repository's GitHub issues, pull requests and projects
#
# Hotkeys (defaults; override them with a `keys` block in config.kdl)
#   j/k, arrows   next / previous item
#   tab / s-tab   next / previous view (issues, pull requests, projects)
#   enter         open the selected issue or pull request
#   c-j / c-k     next / previous comment in the detail view
#   esc           close detail or remote picker
#   u             refresh the current view
#   r             pick the remote to query
#   q             quit (or close detail)
#
# Config highlights (config.kdl, see --print-config-path for its location)
#   github_token_path "~/.config/lazyissues/github_token"
#   time_format "%H:%M %d.%m.%Y"
#   tags {
#       bug "red"                  // palette name
#       triage 255 135 0           // rgb
#       "needs review" 33          // xterm index
#       docs "#5f87ff"
#   }
#   keys {
#       bind "<ctrl>n" "next_item"
#   }
#
# Environment
# - GITHUB_TOKEN (takes precedence over git credentials and the token file)

from __future__ import annotations

import argparse
import datetime as dt
import enum
import logging
import os
import re
import subprocess
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

import kdl
import requests
from prompt_toolkit import Application
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Frame


CONFIG_DIR_NAME = "lazyissues"
CONFIG_NAME = "config.kdl"
STATE_NAME = "state.kdl"
LOG_FILE_NAME = "lazyissues.log"

DEFAULT_TIME_FORMAT = "%H:%M %d.%m.%Y"
DEFAULT_CREDENTIAL_ATTEMPTS = 4
DEFAULT_CREDENTIAL_TIMEOUT = 50  # milliseconds per attempt

GITHUB_GRAPHQL_ENDPOINT = "https://api.github.com/graphql"
USER_AGENT = "lazyissues/0.1.0"


# -----------------------------
# Errors
# -----------------------------
class LazyIssuesError(Exception):
    """Base class for errors that are reported to the user."""


class ConfigError(LazyIssuesError):
    def __init__(self, path: Optional[Path], message: str):
        super().__init__(message)
        self.path = Path(path) if path is not None else None
        self.message = message

    def _location(self) -> str:
        return str(self.path) if self.path is not None else "<config>"

    def __str__(self) -> str:
        return f"{self._location()}: {self.message}"


class ConfigIOError(ConfigError):
    """The config file exists but couldn't be read."""

    def __init__(self, path: Path, error: Exception):
        reason = getattr(error, "strerror", None) or str(error)
        super().__init__(path, f"couldn't read file: {reason}")
        self.error = error


class ConfigParseError(ConfigError):
    """The config file is not valid KDL."""

    def __init__(self, path: Optional[Path], line: Optional[int], column: Optional[int], message: str):
        super().__init__(path, message)
        self.line = line
        self.column = column

    def __str__(self) -> str:
        where = self._location()
        if self.line is not None:
            where += f":{self.line}"
            if self.column is not None:
                where += f":{self.column}"
        return f"{where}: syntax error: {self.message}"


class ConfigValueError(ConfigError):
    """A recognised option carries a value of the wrong shape or range."""

    def __init__(self, path: Optional[Path], option: str, value: object, reason: str, tag: Optional[str] = None):
        self.option = option
        self.value = value
        self.reason = reason
        self.tag = tag
        subject = f'tag "{tag}" in "{option}"' if tag is not None else f'option "{option}"'
        super().__init__(path, f"{subject}: invalid value {value!r}: {reason}")


class GitHubError(LazyIssuesError):
    pass


class GitError(LazyIssuesError):
    pass


# -----------------------------
# Colors
# -----------------------------
# palette name -> prompt_toolkit color
NAMED_COLOR_STYLES: Dict[str, str] = {
    "black": "ansiblack",
    "red": "ansired",
    "green": "ansigreen",
    "yellow": "ansiyellow",
    "blue": "ansiblue",
    "magenta": "ansimagenta",
    "cyan": "ansicyan",
    "gray": "ansigray",
    "darkgray": "ansibrightblack",
    "lightred": "ansibrightred",
    "lightgreen": "ansibrightgreen",
    "lightyellow": "ansibrightyellow",
    "lightblue": "ansibrightblue",
    "lightmagenta": "ansibrightmagenta",
    "lightcyan": "ansibrightcyan",
    "white": "ansiwhite",
    "reset": "ansidefault",
}

_HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")

_XTERM_SYSTEM_COLORS = [
    (0, 0, 0), (128, 0, 0), (0, 128, 0), (128, 128, 0),
    (0, 0, 128), (128, 0, 128), (0, 128, 128), (192, 192, 192),
    (128, 128, 128), (255, 0, 0), (0, 255, 0), (255, 255, 0),
    (0, 0, 255), (255, 0, 255), (0, 255, 255), (255, 255, 255),
]
_XTERM_CUBE_LEVELS = (0, 95, 135, 175, 215, 255)


def normalize_color_name(name: str) -> str:
    key = re.sub(r"[\s_-]+", "", name.lower()).replace("grey", "gray")
    if key.startswith("bright"):
        key = "light" + key[len("bright"):]
    if key == "lightblack":
        key = "darkgray"
    return key


def xterm_rgb(index: int) -> Tuple[int, int, int]:
    """Return the RGB value xterm uses for a 256-color palette index."""
    if index < 16:
        return _XTERM_SYSTEM_COLORS[index]
    if index < 232:
        cube = index - 16
        return (
            _XTERM_CUBE_LEVELS[cube // 36],
            _XTERM_CUBE_LEVELS[(cube // 6) % 6],
            _XTERM_CUBE_LEVELS[cube % 6],
        )
    level = 8 + (index - 232) * 10
    return (level, level, level)


@dataclass(frozen=True)
class NamedColor:
    name: str

    def style(self) -> str:
        return NAMED_COLOR_STYLES[normalize_color_name(self.name)]


@dataclass(frozen=True)
class RgbColor:
    r: int
    g: int
    b: int

    def style(self) -> str:
        return f"#{self.r:02x}{self.g:02x}{self.b:02x}"


@dataclass(frozen=True)
class IndexedColor:
    index: int

    def style(self) -> str:
        return RgbColor(*xterm_rgb(self.index)).style()


Color = Union[NamedColor, RgbColor, IndexedColor]

DEFAULT_TAG_COLOR: Color = NamedColor("white")

DEFAULT_TAGS: Dict[str, Color] = {
    "bug": NamedColor("red"),
    "documentation": NamedColor("blue"),
    "duplicate": NamedColor("gray"),
    "enhancement": NamedColor("lightcyan"),
    "good first issue": NamedColor("lightmagenta"),
    "help wanted": NamedColor("green"),
    "invalid": NamedColor("yellow"),
    "question": NamedColor("magenta"),
    "wontfix": NamedColor("white"),
}


def _as_int(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def _color_byte(value: int, what: str) -> int:
    if not 0 <= value <= 255:
        raise ValueError(f"{what} must be between 0 and 255, got {value}")
    return value


def parse_color(values: List[object]) -> Color:
    """Interpret the arguments of a tag node as exactly one color.

    Accepted shapes: a palette name, a "#rrggbb" string, a single 0-255
    palette index, or three 0-255 integers. Raises ValueError otherwise.
    """
    if not values:
        raise ValueError("missing color value")
    if len(values) == 1:
        value = values[0]
        if isinstance(value, str):
            text = value.strip()
            if _HEX_COLOR_RE.match(text):
                return RgbColor(int(text[1:3], 16), int(text[3:5], 16), int(text[5:7], 16))
            if normalize_color_name(text) in NAMED_COLOR_STYLES:
                return NamedColor(value)
            if text.isdigit():
                return IndexedColor(_color_byte(int(text), "color index"))
            raise ValueError(f"unknown color name; expected one of {', '.join(NAMED_COLOR_STYLES)}")
        index = _as_int(value)
        if index is None:
            raise ValueError("expected a color name, a palette index or three rgb values")
        return IndexedColor(_color_byte(index, "color index"))
    if len(values) == 3:
        components = [_as_int(v) for v in values]
        if any(c is None for c in components):
            raise ValueError("rgb components must be integers")
        return RgbColor(*(_color_byte(c, "rgb component") for c in components))
    raise ValueError(f"expected 1 or 3 values, got {len(values)}")


# -----------------------------
# Key bindings
# -----------------------------
class KeyAction(str, enum.Enum):
    NEXT_ITEM = "next_item"
    PREVIOUS_ITEM = "previous_item"
    NEXT_VIEW = "next_view"
    PREVIOUS_VIEW = "previous_view"
    NEXT_DETAIL_ITEM = "next_detail_item"
    PREVIOUS_DETAIL_ITEM = "previous_detail_item"
    OPEN_DETAIL = "open_detail"
    CLOSE_DETAIL = "close_detail"
    REFRESH = "refresh"
    SELECT_REMOTE = "select_remote"
    QUIT = "quit"

    @classmethod
    def parse(cls, name: str) -> Optional["KeyAction"]:
        try:
            return cls(name.strip().lower().replace("-", "_"))
        except ValueError:
            return None


KeySequence = Tuple[str, ...]

DEFAULT_KEYS: Dict[KeySequence, KeyAction] = {
    ("j",): KeyAction.NEXT_ITEM,
    ("down",): KeyAction.NEXT_ITEM,
    ("k",): KeyAction.PREVIOUS_ITEM,
    ("up",): KeyAction.PREVIOUS_ITEM,
    ("tab",): KeyAction.NEXT_VIEW,
    ("s-tab",): KeyAction.PREVIOUS_VIEW,
    ("c-j",): KeyAction.NEXT_DETAIL_ITEM,
    ("c-k",): KeyAction.PREVIOUS_DETAIL_ITEM,
    ("enter",): KeyAction.OPEN_DETAIL,
    ("escape",): KeyAction.CLOSE_DETAIL,
    ("u",): KeyAction.REFRESH,
    ("r",): KeyAction.SELECT_REMOTE,
    ("q",): KeyAction.QUIT,
}

BIND_NODE = "bind"
VALID_MODIFIERS = ("shft", "ctrl", "alt", "meta")
_MODIFIER_RE = re.compile(r"<([^<>]*)>")
_KEY_NAMES = {
    "tab": "tab",
    "enter": "enter",
    "return": "enter",
    "esc": "escape",
    "escape": "escape",
    "space": " ",
    "backspace": "backspace",
    "delete": "delete",
    "up": "up",
    "down": "down",
    "left": "left",
    "right": "right",
    "home": "home",
    "end": "end",
    "pageup": "pageup",
    "pagedown": "pagedown",
}
_SHIFTABLE_KEYS = {"tab", "up", "down", "left", "right", "home", "end", "delete"}


def parse_key_binding(key_str: str) -> KeySequence:
    """Translate a binding like "<ctrl>j" or "<alt>x" into prompt_toolkit keys."""
    text = key_str.strip()
    modifiers = set()
    pos = 0
    while True:
        m = _MODIFIER_RE.match(text, pos)
        if not m:
            break
        name = m.group(1).strip().lower()
        if name in ("super", "hypr"):
            raise ValueError(f'modifier "<{name}>" can\'t be received by a terminal')
        if name not in VALID_MODIFIERS:
            valid = ", ".join(f"<{mod}>" for mod in VALID_MODIFIERS)
            raise ValueError(f'modifier "<{name}>" is not a valid modifier. Available ones are: {valid}')
        modifiers.add(name)
        pos = m.end()
    key = text[pos:]
    if not key:
        raise ValueError(f'couldn\'t extract any key in "{key_str}"')
    if len(key) == 1:
        base = key
    else:
        base = _KEY_NAMES.get(key.lower())
        if base is None:
            raise ValueError(f'unknown key "{key}"')

    if "ctrl" in modifiers:
        if len(base) == 1 and base.isalpha():
            name = f"c-{base.lower()}"
        elif base == " ":
            name = "c-space"
        else:
            raise ValueError(f'<ctrl> can only be combined with a letter or space, got "{key}"')
    elif "shft" in modifiers:
        if len(base) == 1:
            name = base.upper()
        elif base in _SHIFTABLE_KEYS:
            name = f"s-{base}"
        else:
            raise ValueError(f'<shft> can\'t be combined with "{key}"')
    else:
        name = base

    if "alt" in modifiers or "meta" in modifiers:
        return ("escape", name)
    return (name,)


# -----------------------------
# Settings
# -----------------------------
@dataclass(frozen=True)
class Settings:
    """Resolved configuration for one run. Build once, pass it where it's needed."""
    github_token_path: Optional[Path] = None
    gitlab_token_path: Optional[Path] = None
    gitea_token_path: Optional[Path] = None
    tags: Mapping[str, Color] = field(default_factory=lambda: dict(DEFAULT_TAGS))
    time_format: str = DEFAULT_TIME_FORMAT
    credentials_attempts: int = DEFAULT_CREDENTIAL_ATTEMPTS
    credentials_timeout: int = DEFAULT_CREDENTIAL_TIMEOUT
    keys: Mapping[KeySequence, KeyAction] = field(default_factory=lambda: dict(DEFAULT_KEYS))
    source_path: Optional[Path] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))
        object.__setattr__(self, "keys", MappingProxyType(dict(self.keys)))

    def __hash__(self) -> int:
        return hash((
            self.github_token_path,
            self.gitlab_token_path,
            self.gitea_token_path,
            frozenset(self.tags.items()),
            self.time_format,
            self.credentials_attempts,
            self.credentials_timeout,
            frozenset(self.keys.items()),
        ))

    def tag_color(self, tag: str) -> Color:
        return self.tags.get(tag, DEFAULT_TAG_COLOR)

    def format_timestamp(self, value: Optional[str]) -> str:
        return format_timestamp(value, self.time_format)


# -----------------------------
# Config file location
# -----------------------------
def _platform_kind(platform: Optional[str] = None) -> str:
    name = platform or sys.platform
    if name.startswith("win"):
        return "windows"
    if name == "darwin":
        return "macos"
    return "linux"


def _home_dir(environ: Mapping[str, str]) -> Path:
    home = environ.get("HOME") or environ.get("USERPROFILE")
    return Path(home) if home else Path.home()


def config_base_dir(platform: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    kind = _platform_kind(platform)
    if kind == "windows":
        local = env.get("LOCALAPPDATA")
        return Path(local) if local else _home_dir(env) / "AppData" / "Local"
    if kind == "macos":
        return _home_dir(env) / "Library" / "Application Support"
    xdg = env.get("XDG_CONFIG_HOME")
    if xdg and os.path.isabs(xdg):
        return Path(xdg)
    return _home_dir(env) / ".config"


def data_base_dir(platform: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    if _platform_kind(platform) != "linux":
        return config_base_dir(platform, env)
    xdg = env.get("XDG_DATA_HOME")
    if xdg and os.path.isabs(xdg):
        return Path(xdg)
    return _home_dir(env) / ".local" / "share"


def config_file_path(platform: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Path:
    """Where config.kdl is expected on this platform. The file may not exist."""
    return config_base_dir(platform, environ) / CONFIG_DIR_NAME / CONFIG_NAME


def state_file_path(platform: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Path:
    return config_base_dir(platform, environ) / CONFIG_DIR_NAME / STATE_NAME


def log_file_path(platform: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Path:
    return data_base_dir(platform, environ) / CONFIG_DIR_NAME / LOG_FILE_NAME


# -----------------------------
# Config loading
# -----------------------------
TOKEN_PATH_OPTIONS = ("github_token_path", "gitlab_token_path", "gitea_token_path")
CREDENTIAL_OPTIONS = ("credentials_attempts", "credentials_timeout")

_PARSE_LOCATION_RE = re.compile(r"(\d+):(\d+)")
_PARSE_PREFIX_RE = re.compile(r"^\d+:\d+ parse error:\s*")


def _kdl_value(value: object) -> object:
    # kdl-py wraps tagged values; the wrapper keeps the Python value in `.value`
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return getattr(value, "value", value)


def _node_args(node) -> List[object]:
    return [_kdl_value(arg) for arg in (node.args or [])]


def _describe_args(args: List[object]) -> object:
    if len(args) == 1:
        return args[0]
    return args


def read_config_text(path: Path) -> Optional[str]:
    """Return the config file's text, or None when there is no file."""
    path = Path(path)
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logging.getLogger('lazyissues').info("No config file at %s; using defaults", path)
        return None
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigIOError(path, exc) from exc


def parse_config_document(text: str, path: Optional[Path] = None):
    try:
        return kdl.parse(text)
    except kdl.ParseError as exc:
        line = getattr(exc, "line", None)
        column = getattr(exc, "col", None)
        message = str(getattr(exc, "msg", "") or exc).strip()
        message = _PARSE_PREFIX_RE.sub("", message) or message
        if line is None:
            m = _PARSE_LOCATION_RE.search(str(exc))
            if m:
                line, column = int(m.group(1)), int(m.group(2))
        raise ConfigParseError(path, line, column, message) from exc


def _resolve_token_path(node, base_dir: Path, path: Optional[Path]) -> Path:
    args = _node_args(node)
    value = args[0] if args else None
    if not isinstance(value, str) or not value.strip():
        raise ConfigValueError(path, node.name, value, "expected a non-empty path string")
    token_path = Path(os.path.expanduser(value.strip()))
    if not token_path.is_absolute():
        token_path = base_dir / token_path
    return Path(os.path.abspath(token_path))


def _resolve_time_format(node, path: Optional[Path]) -> str:
    args = _node_args(node)
    value = args[0] if args else None
    if not isinstance(value, str) or not value:
        raise ConfigValueError(path, node.name, value, "expected a non-empty format string")
    return value


def _resolve_non_negative_int(node, path: Optional[Path]) -> int:
    args = _node_args(node)
    value = args[0] if args else None
    number = _as_int(value)
    if number is None or number < 0:
        raise ConfigValueError(path, node.name, value, "expected a non-negative integer")
    return number


def _resolve_tags(node, path: Optional[Path]) -> Dict[str, Color]:
    resolved: Dict[str, Color] = {}
    for child in node.nodes or []:
        name = child.name
        if not isinstance(name, str) or not name.strip():
            raise ConfigValueError(path, node.name, name, "tag names must be non-empty strings")
        args = _node_args(child)
        try:
            resolved[name] = parse_color(args)
        except ValueError as exc:
            raise ConfigValueError(path, node.name, _describe_args(args), str(exc), tag=name) from exc
    return resolved


def _resolve_keys(node, path: Optional[Path]) -> Dict[KeySequence, KeyAction]:
    bindings: Dict[KeySequence, KeyAction] = {}
    for child in node.nodes or []:
        if child.name != BIND_NODE:
            logging.getLogger('lazyissues').debug('Ignoring "%s" inside "keys"', child.name)
            continue
        args = _node_args(child)
        if len(args) < 2 or not all(isinstance(a, str) for a in args[:2]):
            raise ConfigValueError(path, node.name, _describe_args(args), 'expected bind "<key>" "<action>"')
        key_str, action_name = args[0], args[1]
        action = KeyAction.parse(action_name)
        if action is None:
            raise ConfigValueError(path, node.name, action_name, f'"{action_name}" is not a valid action')
        try:
            sequence = parse_key_binding(key_str)
        except ValueError as exc:
            raise ConfigValueError(path, node.name, key_str, str(exc)) from exc
        bindings[sequence] = action
    return bindings


def resolve_settings(document, path: Optional[Path] = None) -> Settings:
    """Map the recognised top-level nodes of a parsed document onto Settings."""
    path = Path(path) if path is not None else None
    base_dir = path.parent if path is not None else Path.cwd()
    values: Dict[str, object] = {}
    tags = dict(DEFAULT_TAGS)
    keys = dict(DEFAULT_KEYS)
    for node in document.nodes:
        option = node.name
        if option in TOKEN_PATH_OPTIONS:
            values[option] = _resolve_token_path(node, base_dir, path)
        elif option == "tags":
            tags.update(_resolve_tags(node, path))
        elif option == "time_format":
            values["time_format"] = _resolve_time_format(node, path)
        elif option in CREDENTIAL_OPTIONS:
            values[option] = _resolve_non_negative_int(node, path)
        elif option == "keys":
            keys.update(_resolve_keys(node, path))
        else:
            logging.getLogger('lazyissues').debug('Ignoring unrecognised option "%s" in %s', option, path)
    return Settings(tags=tags, keys=keys, source_path=path, **values)


def load_settings(path: Optional[Path] = None) -> Settings:
    """Locate, read, parse and resolve the config file.

    A missing file yields default Settings. Unreadable files, malformed KDL
    and invalid option values raise the matching ConfigError subclass.
    """
    config_path = Path(path) if path is not None else config_file_path()
    text = read_config_text(config_path)
    if text is None:
        return Settings()
    document = parse_config_document(text, config_path)
    settings = resolve_settings(document, config_path)
    logging.getLogger('lazyissues').info("Loaded config from %s (%d tags)", config_path, len(settings.tags))
    return settings


def describe_settings(settings: Settings) -> str:
    lines = [f"config: {settings.source_path or '(defaults)'}"]
    for option in TOKEN_PATH_OPTIONS:
        value = getattr(settings, option)
        if value is not None:
            lines.append(f"{option}: {value}")
    lines.append(f"time_format: {settings.time_format}")
    lines.append(f"credentials: {settings.credentials_attempts} x {settings.credentials_timeout}ms")
    lines.append("tags:")
    for name in sorted(settings.tags):
        lines.append(f"  {name}: {settings.tags[name].style()}")
    lines.append("keys:")
    for sequence, action in sorted(settings.keys.items(), key=lambda kv: (kv[1].value, kv[0])):
        lines.append(f"  {' '.join(sequence)}: {action.value}")
    return "\n".join(lines)


# -----------------------------
# Access tokens
# -----------------------------
BACKENDS = ("github", "gitlab", "gitea")
DEFAULT_BACKEND_HOSTS = {"github": "github.com", "gitlab": "gitlab.com"}


def read_token_file(path: Path) -> str:
    token = Path(path).read_text(encoding="utf-8").strip()
    if not token:
        raise ValueError(f"token file {path} is empty")
    return token


def git_credential_token(host: str, attempts: int, timeout_ms: int) -> Optional[str]:
    """Ask git's credential helpers for a password for https://<host>.

    The helper gets attempts * timeout_ms milliseconds before it is killed.
    """
    request = f"protocol=https\nhost={host}\n\n"
    env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
    try:
        proc = subprocess.Popen(
            ["git", "credential", "fill"],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            env=env,
        )
    except OSError as exc:
        logging.getLogger('lazyissues').info("git credential helper unavailable: %s", exc)
        return None
    budget = max(0, attempts) * max(0, timeout_ms) / 1000.0
    try:
        out, _ = proc.communicate(request, timeout=budget)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.communicate()
        logging.getLogger('lazyissues').info("git credential helper timed out after %dms", int(budget * 1000))
        return None
    if proc.returncode != 0:
        logging.getLogger('lazyissues').info("git credential helper found nothing for %s", host)
        return None
    for line in (out or "").splitlines():
        if line.startswith("password="):
            return line[len("password="):].strip() or None
    return None


def resolve_access_token(
    settings: Settings,
    backend: str = "github",
    remote_host: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Find a token: $<BACKEND>_TOKEN, then git credentials, then the token file."""
    if backend not in BACKENDS:
        raise ValueError(f"unknown backend {backend!r}")
    env = os.environ if environ is None else environ
    log = logging.getLogger('lazyissues')

    token = (env.get(f"{backend.upper()}_TOKEN") or "").strip()
    if token:
        log.debug("Using %s token from environment", backend)
        return token

    host = remote_host or DEFAULT_BACKEND_HOSTS.get(backend)
    if host:
        token = git_credential_token(host, settings.credentials_attempts, settings.credentials_timeout)
        if token:
            log.debug("Using %s token from git credentials", backend)
            return token

    token_path = getattr(settings, f"{backend}_token_path")
    if token_path is None:
        log.info("No %s token file configured", backend)
        return None
    try:
        return read_token_file(token_path)
    except (OSError, ValueError) as exc:
        log.error("Couldn't read %s token file %s: %s", backend, token_path, exc)
        return None


# -----------------------------
# Git remotes
# -----------------------------
@dataclass(frozen=True)
class RemoteRepo:
    host: str
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


_REMOTE_URL_PATTERNS = [
    # https://github.com/owner/name.git, ssh://git@github.com:22/owner/name
    re.compile(
        r"^[a-z][a-z0-9+.-]*://(?:[^@/]+@)?(?P<host>[^/:]+)(?::\d+)?/"
        r"(?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$",
        re.IGNORECASE,
    ),
    # git@github.com:owner/name.git
    re.compile(r"^(?:[^@/]+@)?(?P<host>[^/:]+):(?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$"),
]


def parse_remote_url(url: Optional[str]) -> Optional[RemoteRepo]:
    text = (url or "").strip()
    for pattern in _REMOTE_URL_PATTERNS:
        m = pattern.match(text)
        if m:
            return RemoteRepo(m.group("host").lower(), m.group("owner"), m.group("name"))
    return None


def _git(*args: str, cwd: Optional[str] = None) -> str:
    try:
        result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise GitError(f"couldn't run git: {exc}") from exc
    if result.returncode != 0:
        raise GitError(result.stderr.strip() or f"git {' '.join(args)} failed")
    return result.stdout.strip()


def git_repo_root(cwd: Optional[str] = None) -> Path:
    return Path(_git("rev-parse", "--show-toplevel", cwd=cwd))


def list_remotes(cwd: Optional[str] = None) -> List[Tuple[str, str]]:
    """Return (name, url) for every remote of the repository."""
    try:
        out = _git("config", "--get-regexp", r"^remote\..*\.url$", cwd=cwd)
    except GitError:
        return []
    remotes: List[Tuple[str, str]] = []
    for line in out.splitlines():
        key, _, url = line.partition(" ")
        name = key[len("remote."):-len(".url")]
        if name and url:
            remotes.append((name, url.strip()))
    return remotes


def get_active_remote(cwd: Optional[str] = None) -> str:
    """URL of the upstream's remote, else origin, else the first remote."""
    remotes = dict(list_remotes(cwd))
    try:
        upstream = _git("rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{upstream}", cwd=cwd)
    except GitError:
        upstream = ""
    remote_name = upstream.split("/", 1)[0] if "/" in upstream else ""
    if remote_name in remotes:
        return remotes[remote_name]
    if "origin" in remotes:
        return remotes["origin"]
    if remotes:
        return next(iter(remotes.values()))
    raise GitError("No remote found")


# -----------------------------
# Repository state (state.kdl)
# -----------------------------
class RepositoryState:
    """Preferred remote per local repository, persisted next to the config file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else state_file_path()
        self._remotes: Dict[str, str] = {}

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "RepositoryState":
        state = cls(path)
        log = logging.getLogger('lazyissues')
        try:
            text = state.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return state
        except (OSError, UnicodeDecodeError) as exc:
            log.warning("Couldn't read state file %s: %s", state.path, exc)
            return state
        try:
            document = kdl.parse(text)
        except kdl.ParseError as exc:
            log.warning("Ignoring malformed state file %s: %s", state.path, exc)
            return state
        for node in document.nodes:
            if node.name != "repositories":
                log.debug('Option "%s" is not a recognised state option', node.name)
                continue
            for child in node.nodes or []:
                if child.name != "repo":
                    continue
                args = _node_args(child)
                if len(args) < 2 or not all(isinstance(a, str) for a in args[:2]):
                    log.warning("repo entry is malformed, expected local path and remote: %r", args)
                    continue
                state._remotes[args[0]] = args[1]
        return state

    def get(self, repo_root: Union[str, Path]) -> Optional[str]:
        return self._remotes.get(str(repo_root))

    def set(self, repo_root: Union[str, Path], remote: str) -> None:
        self._remotes[str(repo_root)] = remote
        self.save()

    def save(self) -> None:
        repos = [kdl.Node(name="repo", args=[root, remote]) for root, remote in sorted(self._remotes.items())]
        document = kdl.Document(nodes=[kdl.Node(name="repositories", nodes=repos)])
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(document.print(), encoding="utf-8")


# -----------------------------
# GitHub GraphQL
# -----------------------------
ISSUES_QUERY = """
query IssuesQuery($repoOwner: String!, $repoName: String!) {
  repository(owner: $repoOwner, name: $repoName) {
    issues(first: 100, orderBy: {field: CREATED_AT, direction: DESC}) {
      nodes {
        number
        title
        closed
        createdAt
        author { login }
        labels(first: 20) { nodes { name } }
      }
    }
  }
}
"""

PULL_REQUESTS_QUERY = """
query PullRequestsQuery($repoOwner: String!, $repoName: String!) {
  repository(owner: $repoOwner, name: $repoName) {
    pullRequests(first: 100, orderBy: {field: CREATED_AT, direction: DESC}) {
      nodes {
        number
        title
        closed
        createdAt
        author { login }
        labels(first: 20) { nodes { name } }
      }
    }
  }
}
"""

PROJECTS_QUERY = """
query ProjectsQuery($repoOwner: String!, $repoName: String!) {
  repository(owner: $repoOwner, name: $repoName) {
    projectsV2(first: 100, orderBy: {field: CREATED_AT, direction: DESC}) {
      nodes {
        number
        title
        closed
        createdAt
        creator { login }
      }
    }
  }
}
"""

_DETAIL_FIELDS = """
      number
      title
      closed
      body
      createdAt
      author { login }
      labels(first: 20) { nodes { name } }
      comments(first: 100) {
        edges {
          node {
            author { login }
            body
            createdAt
          }
        }
      }
"""

ISSUE_DETAIL_QUERY = """
query IssueDetailQuery($repoOwner: String!, $repoName: String!, $number: Int!) {
  repository(owner: $repoOwner, name: $repoName) {
    issue(number: $number) {%s    }
  }
}
""" % _DETAIL_FIELDS

PULL_REQUEST_DETAIL_QUERY = """
query PullRequestDetailQuery($repoOwner: String!, $repoName: String!, $number: Int!) {
  repository(owner: $repoOwner, name: $repoName) {
    pullRequest(number: $number) {%s    }
  }
}
""" % _DETAIL_FIELDS


@dataclass
class ListItem:
    kind: str                  # "issue", "pull_request" or "project"
    number: int
    title: str
    closed: bool
    author: Optional[str]
    created_at: str
    labels: List[str] = field(default_factory=list)


@dataclass
class Comment:
    author: Optional[str]
    created_at: str
    body: str


@dataclass
class ItemDetail:
    item: ListItem
    body: str
    comments: List[Comment] = field(default_factory=list)


def _session(token: str) -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = f"Bearer {token}"
    s.headers["User-Agent"] = USER_AGENT
    return s


def _graphql_raw(session: requests.Session, query: str, variables: Dict[str, object]) -> Dict:
    try:
        r = session.post(GITHUB_GRAPHQL_ENDPOINT, json={"query": query, "variables": variables}, timeout=60)
        r.raise_for_status()
        return r.json()
    except requests.RequestException:
        logging.getLogger('lazyissues').exception("GraphQL request failed")
        raise


def _retry_sleep(seconds: float, on_wait: Optional[Callable[[str], None]] = None) -> None:
    msg = f"Rate limited; waiting {int(seconds)}s…"
    if on_wait:
        on_wait(msg)
    else:
        logging.getLogger('lazyissues').info(msg)
    time.sleep(max(0.0, seconds))


def _parse_retry_after_seconds(resp: Optional[requests.Response]) -> Optional[int]:
    if resp is None or resp.headers is None:
        return None
    retry_after = resp.headers.get('Retry-After')
    if retry_after:
        try:
            return int(float(retry_after))
        except ValueError:
            pass
    reset = resp.headers.get('X-RateLimit-Reset')
    if reset:
        try:
            return max(1, int(reset) - int(time.time()))
        except ValueError:
            pass
    return None


def _graphql_with_backoff(
    session: requests.Session,
    query: str,
    variables: Dict[str, object],
    on_wait: Optional[Callable[[str], None]] = None,
    max_total_wait: int = 300,
) -> Dict:
    """POST a GraphQL query, waiting out rate limits and transient failures.

    - HTTP 403/429/5xx honour Retry-After / X-RateLimit-Reset, else back off exponentially.
    - Timeouts and connection errors back off exponentially.
    - GraphQL RATE_LIMITED errors (HTTP 200) back off; once the wait budget is
      spent the last response is returned for the caller to inspect.
    """
    backoff = 5
    total_wait = 0
    while True:
        try:
            resp = _graphql_raw(session, query, variables)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status not in (403, 429, 502, 503, 504):
                raise
            wait_s = _parse_retry_after_seconds(e.response)
            if wait_s is None:
                wait_s = backoff
                backoff = min(120, backoff * 2)
            if total_wait + wait_s > max_total_wait:
                raise
            _retry_sleep(wait_s, on_wait)
            total_wait += wait_s
            continue
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError):
            wait_s = backoff
            backoff = min(120, backoff * 2)
            if total_wait + wait_s > max_total_wait:
                raise
            _retry_sleep(wait_s, on_wait)
            total_wait += wait_s
            continue

        errs = resp.get("errors") or []
        if any(isinstance(e, dict) and e.get("type") == "RATE_LIMITED" for e in errs):
            wait_s = backoff
            backoff = min(120, backoff * 2)
            if total_wait + wait_s > max_total_wait:
                return resp
            _retry_sleep(wait_s, on_wait)
            total_wait += wait_s
            continue
        return resp


def _query_repository(
    session: requests.Session,
    query: str,
    repo: RemoteRepo,
    extra: Optional[Dict[str, object]] = None,
    on_wait: Optional[Callable[[str], None]] = None,
) -> Dict:
    variables: Dict[str, object] = {"repoOwner": repo.owner, "repoName": repo.name}
    variables.update(extra or {})
    resp = _graphql_with_backoff(session, query, variables, on_wait=on_wait)
    errs = [e for e in (resp.get("errors") or []) if isinstance(e, dict)]
    if errs:
        logging.getLogger('lazyissues').debug("Found errors in response: %s", errs)
    repository = (resp.get("data") or {}).get("repository")
    if repository is None:
        detail = "; ".join(str(e.get("message") or e.get("type")) for e in errs) or "no repository data returned"
        raise GitHubError(f"{repo.full_name}: {detail}")
    return repository


def _parse_list_item(node: object, kind: str, author_key: str = "author") -> Optional[ListItem]:
    if not isinstance(node, dict):
        return None
    number = node.get("number")
    title = node.get("title")
    if number is None or title is None:
        return None
    author = (node.get(author_key) or {}).get("login")
    label_nodes = (node.get("labels") or {}).get("nodes") or []
    labels = [str(lab["name"]) for lab in label_nodes if isinstance(lab, dict) and lab.get("name")]
    return ListItem(
        kind=kind,
        number=int(number),
        title=str(title),
        closed=bool(node.get("closed")),
        author=author,
        created_at=str(node.get("createdAt") or ""),
        labels=labels,
    )


def _parse_connection(repository: Dict, connection: str, kind: str, author_key: str = "author") -> List[ListItem]:
    nodes = (repository.get(connection) or {}).get("nodes") or []
    items = []
    for node in nodes:
        item = _parse_list_item(node, kind, author_key)
        if item is not None:
            items.append(item)
    return items


def fetch_issues(session: requests.Session, repo: RemoteRepo, on_wait=None) -> List[ListItem]:
    repository = _query_repository(session, ISSUES_QUERY, repo, on_wait=on_wait)
    return _parse_connection(repository, "issues", "issue")


def fetch_pull_requests(session: requests.Session, repo: RemoteRepo, on_wait=None) -> List[ListItem]:
    repository = _query_repository(session, PULL_REQUESTS_QUERY, repo, on_wait=on_wait)
    return _parse_connection(repository, "pullRequests", "pull_request")


def fetch_projects(session: requests.Session, repo: RemoteRepo, on_wait=None) -> List[ListItem]:
    repository = _query_repository(session, PROJECTS_QUERY, repo, on_wait=on_wait)
    return _parse_connection(repository, "projectsV2", "project", author_key="creator")


DETAIL_QUERIES = {
    "issue": ("issue", ISSUE_DETAIL_QUERY),
    "pull_request": ("pullRequest", PULL_REQUEST_DETAIL_QUERY),
}


def fetch_item_detail(session: requests.Session, repo: RemoteRepo, item: ListItem, on_wait=None) -> ItemDetail:
    """Fetch body and comments for an issue or pull request."""
    if item.kind not in DETAIL_QUERIES:
        raise ValueError(f"{item.kind} items have no detail view")
    field_name, query = DETAIL_QUERIES[item.kind]
    repository = _query_repository(session, query, repo, extra={"number": item.number}, on_wait=on_wait)
    node = repository.get(field_name)
    parsed = _parse_list_item(node, item.kind)
    if parsed is None:
        raise GitHubError(f"{repo.full_name}#{item.number}: no {item.kind.replace('_', ' ')} returned")
    comments: List[Comment] = []
    for edge in (node.get("comments") or {}).get("edges") or []:
        comment = (edge or {}).get("node")
        if not isinstance(comment, dict):
            continue
        comments.append(Comment(
            author=(comment.get("author") or {}).get("login"),
            created_at=str(comment.get("createdAt") or ""),
            body=str(comment.get("body") or ""),
        ))
    return ItemDetail(item=parsed, body=str(node.get("body") or ""), comments=comments)


# -----------------------------
# Rendering
# -----------------------------
VIEWS: List[Tuple[str, str]] = [
    ("issues", "Issues"),
    ("pull_requests", "Pull Requests"),
    ("projects", "Projects"),
]
VIEW_TITLES = dict(VIEWS)
VIEW_FETCHERS: Dict[str, Callable[..., List[ListItem]]] = {
    "issues": fetch_issues,
    "pull_requests": fetch_pull_requests,
    "projects": fetch_projects,
}

UI_STYLE: Dict[str, str] = {
    'tab': '#888888',
    'tab.active': 'bold reverse',
    'row.selected': 'bold',
    'cursor': 'bold ansibrightgreen',
    'status.open': 'ansigreen',
    'status.closed': 'ansired',
    'meta': '#888888',
    'hint': 'italic #888888',
    'detail.title': 'bold',
    'comment.author': 'bold ansicyan',
    'comment.selected': 'reverse',
    'status-line': 'bg:#303030 #f0f0f0',
}


def format_timestamp(value: Optional[str], fmt: str) -> str:
    """Apply a strftime format to an ISO-8601 timestamp; unparsable input is returned as-is."""
    if not value:
        return "-"
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    try:
        return parsed.strftime(fmt)
    except ValueError:
        return value


def _status_fragment(item: ListItem) -> Tuple[str, str]:
    if item.closed:
        return ("class:status.closed", "✓")
    return ("class:status.open", "○")


def _label_fragments(labels: List[str], settings: Settings) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    for label in labels:
        frags.append(("", " "))
        frags.append((settings.tag_color(label).style(), f"[{label}]"))
    return frags


def build_tab_fragments(active_view: str) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    for key, title in VIEWS:
        style = "class:tab.active" if key == active_view else "class:tab"
        frags.append((style, f" {title} "))
        frags.append(("", " "))
    return frags


def build_list_fragments(items: List[ListItem], selected: int, settings: Settings) -> List[Tuple[str, str]]:
    """Return (style, text) tuples for the item list of one view."""
    if not items:
        return [("class:hint", "Nothing to show. Press "), ("bold", "u"), ("class:hint", " to fetch.")]
    frags: List[Tuple[str, str]] = []
    for idx, item in enumerate(items):
        is_selected = idx == selected
        if is_selected:
            frags.append(("[SetCursorPosition]", ""))
        frags.append(("class:cursor", "> " if is_selected else "  "))
        frags.append(_status_fragment(item))
        frags.append(("class:row.selected" if is_selected else "", f" #{item.number} {item.title}"))
        frags.append(("", "\n"))
        meta = f"    {item.author or 'ghost'} · {settings.format_timestamp(item.created_at)}"
        frags.append(("class:meta", meta))
        frags.extend(_label_fragments(item.labels, settings))
        frags.append(("", "\n"))
    frags.pop()
    return frags


def build_detail_fragments(detail: ItemDetail, comment_index: int, settings: Settings) -> List[Tuple[str, str]]:
    item = detail.item
    frags: List[Tuple[str, str]] = [
        _status_fragment(item),
        ("class:detail.title", f" #{item.number} {item.title}"),
        ("", "\n"),
        ("class:meta", f"{item.author or 'ghost'} · {settings.format_timestamp(item.created_at)}"),
    ]
    frags.extend(_label_fragments(item.labels, settings))
    frags.append(("", "\n\n"))
    frags.append(("", detail.body or "(no description)"))
    frags.append(("", "\n\n"))
    frags.append(("bold", f"Comments ({len(detail.comments)})"))
    for idx, comment in enumerate(detail.comments):
        is_selected = idx == comment_index
        frags.append(("", "\n\n"))
        if is_selected:
            frags.append(("[SetCursorPosition]", ""))
        header_style = "class:comment.author class:comment.selected" if is_selected else "class:comment.author"
        frags.append((header_style, comment.author or "ghost"))
        frags.append(("class:meta", f" · {settings.format_timestamp(comment.created_at)}"))
        frags.append(("", "\n"))
        frags.append(("", comment.body))
    return frags


def build_remote_picker_fragments(remotes: List[str], selected: int) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = [("bold", "Select the remote to query"), ("", "\n\n")]
    if not remotes:
        frags.append(("class:hint", "No remotes found in this repository."))
        return frags
    for idx, url in enumerate(remotes):
        is_selected = idx == selected
        frags.append(("class:cursor", "> " if is_selected else "  "))
        frags.append(("class:row.selected" if is_selected else "", url))
        frags.append(("", "\n"))
    frags.pop()
    return frags


# -----------------------------
# View state
# -----------------------------
class Request(enum.Enum):
    """Follow-up work a key action asks the UI loop to perform."""
    FETCH = "fetch"
    DETAIL = "detail"
    LIST_REMOTES = "list_remotes"
    SET_REMOTE = "set_remote"


def _wrap(index: int, delta: int, size: int) -> int:
    if size <= 0:
        return 0
    return (index + delta) % size


class ViewState:
    """Everything the TUI displays; mutated only on the UI thread."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.view_index = 0
        self.items: Dict[str, List[ListItem]] = {key: [] for key, _ in VIEWS}
        self.selected: Dict[str, int] = {key: 0 for key, _ in VIEWS}
        self.loaded: set = set()
        self.detail: Optional[ItemDetail] = None
        self.comment_index = 0
        self.remotes: Optional[List[str]] = None
        self.remote_index = 0
        self.status = ""
        self.quit_requested = False
        # bumped whenever the queried repository changes
        self.generation = 0

    @property
    def active_view(self) -> str:
        return VIEWS[self.view_index][0]

    def selected_item(self) -> Optional[ListItem]:
        items = self.items[self.active_view]
        if not items:
            return None
        return items[self.selected[self.active_view]]

    def set_items(self, view: str, items: List[ListItem], generation: Optional[int] = None) -> bool:
        """Store fetched rows; rows fetched before the last clear_items() are dropped."""
        if generation is not None and generation != self.generation:
            return False
        self.items[view] = list(items)
        self.loaded.add(view)
        if self.selected[view] >= len(items):
            self.selected[view] = 0
        return True

    def clear_items(self) -> None:
        for key, _ in VIEWS:
            self.items[key] = []
            self.selected[key] = 0
        self.loaded.clear()
        self.detail = None
        self.generation += 1

    def set_detail(self, detail: ItemDetail, generation: Optional[int] = None) -> bool:
        if generation is not None and generation != self.generation:
            return False
        self.detail = detail
        self.comment_index = 0
        return True

    def open_remote_picker(self, remotes: List[str]) -> None:
        self.remotes = list(remotes)
        self.remote_index = 0

    def chosen_remote(self) -> Optional[str]:
        if not self.remotes:
            return None
        return self.remotes[self.remote_index]

    def close_remote_picker(self) -> None:
        self.remotes = None
        self.remote_index = 0

    def _move_selection(self, delta: int) -> None:
        view = self.active_view
        self.selected[view] = _wrap(self.selected[view], delta, len(self.items[view]))

    def _switch_view(self, delta: int) -> Optional[Request]:
        self.detail = None
        self.view_index = _wrap(self.view_index, delta, len(VIEWS))
        if self.active_view not in self.loaded:
            return Request.FETCH
        return None

    def _apply_remote_picker(self, action: KeyAction) -> Optional[Request]:
        if action == KeyAction.NEXT_ITEM:
            self.remote_index = _wrap(self.remote_index, 1, len(self.remotes))
        elif action == KeyAction.PREVIOUS_ITEM:
            self.remote_index = _wrap(self.remote_index, -1, len(self.remotes))
        elif action == KeyAction.OPEN_DETAIL:
            if self.chosen_remote() is not None:
                return Request.SET_REMOTE
        elif action in (KeyAction.CLOSE_DETAIL, KeyAction.QUIT):
            self.close_remote_picker()
        return None

    def _apply_detail(self, action: KeyAction) -> Optional[Request]:
        count = len(self.detail.comments)
        if action in (KeyAction.NEXT_DETAIL_ITEM, KeyAction.NEXT_ITEM):
            self.comment_index = _wrap(self.comment_index, 1, count)
        elif action in (KeyAction.PREVIOUS_DETAIL_ITEM, KeyAction.PREVIOUS_ITEM):
            self.comment_index = _wrap(self.comment_index, -1, count)
        elif action in (KeyAction.CLOSE_DETAIL, KeyAction.QUIT):
            self.detail = None
        elif action == KeyAction.NEXT_VIEW:
            return self._switch_view(1)
        elif action == KeyAction.PREVIOUS_VIEW:
            return self._switch_view(-1)
        elif action == KeyAction.REFRESH:
            return Request.DETAIL
        elif action == KeyAction.SELECT_REMOTE:
            return Request.LIST_REMOTES
        return None

    def apply(self, action: KeyAction) -> Optional[Request]:
        """Apply a key action and return the follow-up request, if any."""
        if self.remotes is not None:
            return self._apply_remote_picker(action)
        if self.detail is not None:
            return self._apply_detail(action)
        if action == KeyAction.NEXT_ITEM:
            self._move_selection(1)
        elif action == KeyAction.PREVIOUS_ITEM:
            self._move_selection(-1)
        elif action == KeyAction.NEXT_VIEW:
            return self._switch_view(1)
        elif action == KeyAction.PREVIOUS_VIEW:
            return self._switch_view(-1)
        elif action == KeyAction.OPEN_DETAIL:
            item = self.selected_item()
            if item is None:
                self.status = "Nothing selected."
            elif item.kind not in DETAIL_QUERIES:
                self.status = "Projects have no detail view."
            else:
                return Request.DETAIL
        elif action == KeyAction.REFRESH:
            return Request.FETCH
        elif action == KeyAction.SELECT_REMOTE:
            return Request.LIST_REMOTES
        elif action == KeyAction.QUIT:
            self.quit_requested = True
        return None

    def body_fragments(self) -> List[Tuple[str, str]]:
        if self.remotes is not None:
            return build_remote_picker_fragments(self.remotes, self.remote_index)
        if self.detail is not None:
            return build_detail_fragments(self.detail, self.comment_index, self.settings)
        view = self.active_view
        return build_list_fragments(self.items[view], self.selected[view], self.settings)


# -----------------------------
# TUI
# -----------------------------
def run_ui(
    settings: Settings,
    token: Optional[str],
    repo: Optional[RemoteRepo],
    repo_state: Optional[RepositoryState] = None,
    repo_root: Optional[Path] = None,
) -> None:
    """Full-screen browser for issues, pull requests and projects of one repository."""
    log = logging.getLogger('lazyissues')
    view = ViewState(settings)
    session = _session(token) if token else None
    executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="lazyissues-fetch")
    current = {"repo": repo}

    def frame_title() -> str:
        active = current["repo"]
        return active.full_name if active else "no remote"

    container = HSplit([
        Window(FormattedTextControl(lambda: build_tab_fragments(view.active_view)), height=1),
        Frame(Window(FormattedTextControl(view.body_fragments, focusable=True), wrap_lines=True), title=frame_title),
        Window(FormattedTextControl(lambda: [("class:status-line", view.status)]), height=1, style="class:status-line"),
    ])
    kb = KeyBindings()
    app = Application(layout=Layout(container), key_bindings=kb, full_screen=True, style=Style.from_dict(UI_STYLE))

    def deliver(fn: Callable[[], None]) -> None:
        # worker threads hand results back to the event loop that owns `view`
        def _run():
            fn()
            app.invalidate()
        loop = getattr(app, "loop", None)
        if loop is None:
            _run()
        else:
            loop.call_soon_threadsafe(_run)

    def ready() -> bool:
        if session is None:
            view.status = "GitHub token not set."
            return False
        if current["repo"] is None:
            view.status = "No active remote set for repository. Press r to pick one."
            return False
        return True

    def request_fetch(view_key: str) -> None:
        if not ready():
            return
        title = VIEW_TITLES[view_key]
        view.status = f"Fetching {title.lower()}…"
        generation = view.generation
        future = executor.submit(VIEW_FETCHERS[view_key], session, current["repo"])

        def _apply(fut=future):
            try:
                items = fut.result()
            except (GitHubError, requests.RequestException) as exc:
                log.error("%s query failed: %s", view_key, exc)
                view.status = f"Fetching {title.lower()} failed: {exc}"
                return
            if not view.set_items(view_key, items, generation):
                log.debug("Dropping %s fetched for a previous remote", view_key)
                return
            view.status = f"{len(items)} {title.lower()}"

        future.add_done_callback(lambda fut: deliver(_apply))

    def request_detail() -> None:
        item = view.selected_item()
        if item is None or not ready():
            return
        view.status = f"Loading #{item.number}…"
        generation = view.generation
        future = executor.submit(fetch_item_detail, session, current["repo"], item)

        def _apply(fut=future):
            try:
                detail = fut.result()
            except (GitHubError, requests.RequestException) as exc:
                log.error("detail query for #%s failed: %s", item.number, exc)
                view.status = f"Loading #{item.number} failed: {exc}"
                return
            if not view.set_detail(detail, generation):
                return
            view.status = f"#{item.number}: {len(detail.comments)} comments"

        future.add_done_callback(lambda fut: deliver(_apply))

    def list_remote_urls() -> None:
        try:
            remotes = [url for _, url in list_remotes()]
        except GitError as exc:
            view.status = f"Couldn't list remotes: {exc}"
            return
        view.open_remote_picker(remotes)

    def set_remote() -> None:
        url = view.chosen_remote()
        parsed = parse_remote_url(url)
        view.close_remote_picker()
        if parsed is None:
            view.status = f"Can't read owner/name from {url}"
            return
        current["repo"] = parsed
        if repo_state is not None and repo_root is not None:
            try:
                repo_state.set(repo_root, url)
            except OSError as exc:
                log.error("Couldn't save state file %s: %s", repo_state.path, exc)
        view.clear_items()
        request_fetch(view.active_view)

    handlers = {
        Request.FETCH: lambda: request_fetch(view.active_view),
        Request.DETAIL: request_detail,
        Request.LIST_REMOTES: list_remote_urls,
        Request.SET_REMOTE: set_remote,
    }

    def handle(action: KeyAction, event) -> None:
        request = view.apply(action)
        if request is not None:
            handlers[request]()
        if view.quit_requested:
            event.app.exit()

    def bind(sequence: KeySequence, action: KeyAction) -> None:
        @kb.add(*sequence)
        def _(event):
            handle(action, event)

    for sequence, action in settings.keys.items():
        bind(sequence, action)

    @kb.add('c-c')
    def _(event):
        event.app.exit()

    try:
        app.run(pre_run=lambda: request_fetch(view.active_view))
    finally:
        executor.shutdown(wait=False)


# -----------------------------
# Logging
# -----------------------------
def setup_logging(log_level: str = "INFO", log_path: Optional[Path] = None) -> Path:
    """Send the `lazyissues` logger to a rotating file; the terminal belongs to the UI."""
    path = Path(log_path) if log_path is not None else log_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger('lazyissues')
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.INFO)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return path


# -----------------------------
# CLI
# -----------------------------
def print_summary(settings: Settings, token: Optional[str], repo: Optional[RemoteRepo]) -> int:
    if not token:
        print("No GitHub token found (GITHUB_TOKEN, git credentials or github_token_path).", file=sys.stderr)
        return 1
    if repo is None:
        print("No GitHub remote found; pass --remote.", file=sys.stderr)
        return 1
    try:
        items = fetch_issues(_session(token), repo)
    except (GitHubError, requests.RequestException) as exc:
        print(f"Fetching issues failed: {exc}", file=sys.stderr)
        return 1
    print(f"{repo.full_name}: {len(items)} issues")
    for item in items:
        state = "closed" if item.closed else "open"
        labels = f" [{', '.join(item.labels)}]" if item.labels else ""
        print(f"  #{item.number} {state:<6} {settings.format_timestamp(item.created_at)}  {item.title}{labels}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="lazyissues", description="Terminal viewer for GitHub issues, pull requests and projects")
    ap.add_argument("--config", help="Path to config.kdl (default: platform config dir)")
    ap.add_argument("--remote", help="Remote URL to query instead of the repository's active remote")
    ap.add_argument("--log-level", default="INFO", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--print-config-path", action="store_true", help="Print where the config file is read from and exit")
    ap.add_argument("--check-config", action="store_true", help="Validate the config file, print the resolved settings and exit")
    ap.add_argument("--no-ui", action="store_true", help="Print the repository's issues and exit")
    args = ap.parse_args(argv)

    if args.print_config_path:
        print(args.config or config_file_path())
        return 0

    try:
        setup_logging(args.log_level)
    except OSError as exc:
        print(f"lazyissues: logging disabled: {exc}", file=sys.stderr)
    log = logging.getLogger('lazyissues')

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        log.error("%s", exc)
        print(f"lazyissues: {exc}", file=sys.stderr)
        return 2

    if args.check_config:
        print(describe_settings(settings))
        return 0

    repo_state = RepositoryState.load()
    repo_root: Optional[Path] = None
    try:
        repo_root = git_repo_root()
    except GitError as exc:
        log.info("Not inside a git repository: %s", exc)

    remote = args.remote or (repo_state.get(repo_root) if repo_root else None)
    if not remote and repo_root is not None:
        try:
            remote = get_active_remote()
        except GitError as exc:
            log.info("%s", exc)
    repo = parse_remote_url(remote)
    if remote and repo is None:
        log.warning("Couldn't read owner/name from remote %s", remote)

    token = resolve_access_token(settings, "github", remote_host=repo.host if repo else None)

    if args.no_ui:
        return print_summary(settings, token, repo)
    run_ui(settings, token, repo, repo_state=repo_state, repo_root=repo_root)
    return 0


if __name__ == "__main__":
    sys.exit(main())
