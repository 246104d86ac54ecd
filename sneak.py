#!/usr/bin/env python3
import bisect
import curses
import functools
import logging
import os
import re
import subprocess
import sys
import termios
import threading
import time
import tty
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import List, Optional, Tuple, Union

Span = Tuple[int, int]

LETTERS = "abcdefghijklmnopqrstuvwxyz"

TAG_MATCH = "match"
TAG_CURRENT = "current"
TAG_LABEL = "label"
TAG_DIM = "dim"


@functools.lru_cache(maxsize=1)
def _get_all_tmux_options() -> dict:
    """Batch read all tmux options in one subprocess call."""
    try:
        result = subprocess.run(
            ["tmux", "show-options", "-g"], capture_output=True, text=True, check=False
        )
        options = {}
        for line in result.stdout.strip().split("\n"):
            if " " in line:
                key, value = line.split(" ", 1)
                options[key] = value.strip('"')
        return options
    except Exception:
        return {}


def get_tmux_option(option: str, default: str) -> str:
    """Get tmux option value, falling back to default if not set."""
    return _get_all_tmux_options().get(option, default)


def _parse_option(f, raw: str):
    if f.type is bool:
        return raw.lower() == "true"
    if f.type is int:
        return int(raw)
    if f.type == Optional[int]:
        # "never" and an empty value both disable the threshold
        return None if raw.lower() in ("", "never", "none") else int(raw)
    return raw


@dataclass
class Config:
    """Configuration for sneak."""

    length: int = field(default=2, metadata={"opt": "@sneak-len"})
    next_key: str = field(default="n", metadata={"opt": "@sneak-next-key"})
    prev_key: str = field(default="", metadata={"opt": "@sneak-prev-key"})
    alt_is_reverse: bool = field(
        default=False, metadata={"opt": "@sneak-alt-is-reverse"}
    )
    min_for_labels: Optional[int] = field(
        default=None, metadata={"opt": "@sneak-min-for-labels"}
    )
    case_sensitive: bool = field(
        default=True, metadata={"opt": "@sneak-case-sensitive"}
    )
    vertical_border: str = field(
        default="│", metadata={"opt": "@sneak-vertical-border"}
    )
    horizontal_border: str = field(
        default="─", metadata={"opt": "@sneak-horizontal-border"}
    )
    use_curses: bool = field(default=False, metadata={"opt": "@sneak-use-curses"})

    def __post_init__(self):
        if self.length < 1:
            raise ValueError("Can't match on 0 characters")
        if not self.prev_key:
            self.prev_key = "A-n" if self.alt_is_reverse else "N"

    @classmethod
    def from_tmux(cls) -> "Config":
        """Load configuration from tmux options."""
        kwargs = {}
        for f in fields(cls):
            if f.type is bool:
                default_str = str(f.default).lower()
            elif f.default is None:
                default_str = ""
            else:
                default_str = str(f.default)
            raw = get_tmux_option(f.metadata["opt"], default_str)
            kwargs[f.name] = _parse_option(f, raw)
        return cls(**kwargs)


# ============================================================================
# Keys
# ============================================================================

_NAMED_KEYS = {
    "\r": "Enter",
    "\n": "Enter",
    "\t": "Tab",
    "\x7f": "Backspace",
    "\x08": "Backspace",
    "\x1b": "Esc",
    "\x1b[A": "Up",
    "\x1b[B": "Down",
    "\x1b[C": "Right",
    "\x1b[D": "Left",
    "\x1b[H": "Home",
    "\x1b[F": "End",
    "\x1b[Z": "BTab",
}


@dataclass(frozen=True)
class KeyEvent:
    """A decoded key press.

    ``char`` is set for printable characters only. ``code`` identifies the
    key for comparisons against bindings and for messages: the character
    itself for printable keys, a name like ``Esc`` or ``A-n`` otherwise.
    """

    code: str
    char: Optional[str] = None

    @classmethod
    def from_char(cls, c: str) -> "KeyEvent":
        return cls(code=c, char=c)

    @classmethod
    def parse(cls, spec: str) -> "KeyEvent":
        """Build the key a binding string refers to (``n``, ``A-n``, ``Tab``)."""
        if len(spec) == 1 and spec.isprintable():
            return cls.from_char(spec)
        return cls(code=spec)

    @property
    def is_char(self) -> bool:
        return self.char is not None

    def __str__(self):
        return self.code


def decode_keys(raw: str) -> List[KeyEvent]:
    """Split one terminal read into key events.

    An escape-prefixed read is a single key (bare Esc, an alt chord or a
    CSI sequence); anything else is one key per character.
    """
    if not raw:
        return []
    if raw.startswith("\x1b"):
        if raw in _NAMED_KEYS:
            return [KeyEvent(code=_NAMED_KEYS[raw])]
        if len(raw) == 2 and raw[1].isprintable():
            return [KeyEvent(code=f"A-{raw[1]}")]
        return [KeyEvent(code=repr(raw))]

    keys = []
    for ch in raw:
        if ch in _NAMED_KEYS:
            keys.append(KeyEvent(code=_NAMED_KEYS[ch]))
        elif ch.isprintable():
            keys.append(KeyEvent.from_char(ch))
        elif ord(ch) < 32:
            keys.append(KeyEvent(code=f"C-{chr(ord(ch) + 96)}"))
        else:
            keys.append(KeyEvent(code=repr(ch)))
    return keys


def getch(input_str=None) -> str:
    """Read one burst of input from the terminal, or from input_str if given"""
    if input_str is None:
        fd = sys.stdin.fileno()
        old_settings = termios.tcgetattr(fd)
        try:
            tty.setraw(fd)
            # Escape sequences arrive in a single read
            ch = os.read(fd, 32).decode(errors="replace")
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
    else:
        ch = input_str
    if "\x03" in ch:
        raise KeyboardInterrupt
    return ch


# ============================================================================
# Labels and matching
# ============================================================================


def generate_labels(total: int) -> List[str]:
    """Single-character labels for ``total`` matches.

    The tail of the alphabet is used once each, after skipping as many
    head letters as there are full groups of 26; those head letters are
    then repeated 26 times each. Typing a repeated letter narrows down to
    its group, whose labels are regenerated. Past 26 * 26 matches the
    last group can't be told apart within two rounds.
    """
    multiple = total // len(LETTERS)
    labels = list(LETTERS[multiple:])
    for letter in LETTERS[:multiple]:
        labels.extend(letter * len(LETTERS))
    return labels[:total]


def build_search_pattern(pattern: str, length: int) -> str:
    """Regex for ``pattern`` padded with wildcards up to ``length`` characters"""
    remaining = max(length - len(pattern), 0)
    return f"{re.escape(pattern)}[^\\n]{{{remaining}}}"


def default_focus(matches: List[Span], caret: int) -> Optional[int]:
    """Index of the first match after the caret, or of the last match"""
    for i, (start, _) in enumerate(matches):
        if start > caret:
            return i
    return len(matches) - 1 if matches else None


def find_matches(host: "Host", pattern: str, length: int):
    """Search the host's visible range for ``pattern``.

    Returns the matches in document order along with the index of the
    match to focus by default (None when nothing matched).
    """
    start, end = host.visible_range()
    matches = host.search(build_search_pattern(pattern, length), start, end)
    logging.debug(f"Pattern {pattern!r}: {len(matches)} matches")
    return matches, default_focus(matches, host.caret())


# ============================================================================
# Session state
# ============================================================================


class SessionMemory:
    """The most recently used pattern, shared by every session."""

    def __init__(self, value: str = ""):
        self._lock = threading.Lock()
        self._value = value

    def get(self) -> str:
        with self._lock:
            return self._value

    def set(self, value: str):
        with self._lock:
            self._value = value


LAST = SessionMemory()


@dataclass
class Start:
    pass


@dataclass
class Filtering:
    pattern: str


@dataclass
class Navigating:
    pattern: str
    matches: List[Span]
    focus: int


@dataclass
class LabelFiltering:
    pattern: str
    matches: List[Span]


Step = Union[Start, Filtering, Navigating, LabelFiltering]


class Outcome(Enum):
    CONTINUE = "continue"
    COMMIT = "commit"
    ABORT = "abort"


class Host(ABC):
    """The text surface a sneak session runs against."""

    @abstractmethod
    def visible_range(self) -> Span:
        """Range of offsets that can be searched"""
        pass

    @abstractmethod
    def caret(self) -> int:
        """Offset of the main cursor"""
        pass

    @abstractmethod
    def search(self, regex: str, start: int, end: int) -> List[Span]:
        """Non-overlapping matches of regex within [start, end), in order"""
        pass

    @abstractmethod
    def add_tag(self, tag: str, span: Span):
        pass

    @abstractmethod
    def add_label(self, position: int, label: str):
        """Draw label over the character at position, hiding it"""
        pass

    @abstractmethod
    def remove_tags(self, *tags: str):
        pass

    @abstractmethod
    def move_to(self, span: Span):
        pass

    @abstractmethod
    def reset_mode(self):
        """Return to the default interaction mode"""
        pass

    @abstractmethod
    def notify(self, message: str):
        pass

    def flush(self):
        """Show the decoration changes made since the last flush"""
        pass


class Sneak:
    """Jump to a sequence of characters, one key at a time.

    Feed keys to ``send_key`` until it returns something other than
    ``Outcome.CONTINUE``. The committed span is left in ``selected``.
    """

    def __init__(
        self,
        host: Host,
        memory: SessionMemory = LAST,
        length: int = 2,
        next_key: KeyEvent = KeyEvent.from_char("n"),
        prev_key: KeyEvent = KeyEvent.from_char("N"),
        min_for_labels: Optional[int] = None,
    ):
        if length < 1:
            raise ValueError("Can't match on 0 characters")
        self.host = host
        self.memory = memory
        self.length = length
        self.next_key = next_key
        self.prev_key = prev_key
        self.min_for_labels = min_for_labels
        self.step: Step = Start()
        self.pattern = ""
        self.selected: Optional[Span] = None
        self.finished = False

    @classmethod
    def from_config(cls, config: Config, host: Host, memory: SessionMemory = LAST):
        return cls(
            host,
            memory,
            length=config.length,
            next_key=KeyEvent.parse(config.next_key),
            prev_key=KeyEvent.parse(config.prev_key),
            min_for_labels=config.min_for_labels,
        )

    def enter(self):
        """Dim the searchable region for the duration of the session"""
        self.host.add_tag(TAG_DIM, self.host.visible_range())
        self.host.flush()

    def send_key(self, key: KeyEvent) -> Outcome:
        if self.finished:
            raise RuntimeError("sneak session already ended")

        step = self.step
        logging.debug(f"{type(step).__name__} <- {key}")
        if isinstance(step, Start):
            outcome = self._on_start(key)
        elif isinstance(step, Filtering):
            outcome = self._on_filtering(step, key)
        elif isinstance(step, Navigating):
            outcome = self._on_navigating(step, key)
        else:
            outcome = self._on_label(step, key)
        self.host.flush()
        return outcome

    def _on_start(self, key: KeyEvent) -> Outcome:
        if not key.is_char:
            last = self.memory.get()
            if not last:
                return self.abort("sneak hasn't been used yet, no pattern to repeat")
            self.pattern = last
            return self._resolve()

        self.pattern = key.char
        if self.length == 1:
            return self._resolve()
        return self._filter()

    def _on_filtering(self, step: Filtering, key: KeyEvent) -> Outcome:
        self.host.remove_tags(TAG_MATCH, TAG_CURRENT)
        if not key.is_char:
            return self._resolve()

        self.pattern = step.pattern + key.char
        if len(self.pattern) >= self.length:
            return self._resolve()
        return self._filter()

    def _on_navigating(self, step: Navigating, key: KeyEvent) -> Outcome:
        count = len(step.matches)
        if key == self.next_key:
            step.focus = (step.focus + 1) % count
        elif key == self.prev_key:
            step.focus = (step.focus - 1 + count) % count
        else:
            return self.commit(step.matches[step.focus])

        self._hi_current(step.matches[step.focus])
        return Outcome.CONTINUE

    def _on_label(self, step: LabelFiltering, key: KeyEvent) -> Outcome:
        labels = generate_labels(len(step.matches))
        if not key.is_char or key.char not in labels:
            return self.abort(f"{key} is not a valid label")

        # Labels are recomputed over the shrinking set on every round
        step.matches = [m for m, label in zip(step.matches, labels) if label == key.char]
        if len(step.matches) == 1:
            return self.commit(step.matches[0])

        self._hi_labels(step.matches)
        return Outcome.CONTINUE

    def _filter(self) -> Outcome:
        matches, cur = self._hi_matches()
        if cur is None:
            return self.abort(f"No matches found for {self.pattern}")

        self._hi_current(matches[cur])
        self.step = Filtering(self.pattern)
        return Outcome.CONTINUE

    def _resolve(self) -> Outcome:
        matches, cur = self._hi_matches()
        if cur is None:
            return self.abort(f"No matches found for {self.pattern}")

        # Stop immediately if there is only one match
        if len(matches) == 1:
            return self.commit(matches[0])

        if self.min_for_labels is not None and len(matches) >= self.min_for_labels:
            self.step = LabelFiltering(self.pattern, matches)
            self._hi_labels(matches)
        else:
            self.step = Navigating(self.pattern, matches, cur)
            self._hi_current(matches[cur])
        return Outcome.CONTINUE

    def _hi_matches(self):
        self.host.remove_tags(TAG_MATCH)
        matches, cur = find_matches(self.host, self.pattern, self.length)
        for span in matches:
            self.host.add_tag(TAG_MATCH, span)
        return matches, cur

    def _hi_current(self, span: Span):
        self.host.remove_tags(TAG_CURRENT)
        self.host.add_tag(TAG_CURRENT, span)

    def _hi_labels(self, matches: List[Span]):
        self.host.remove_tags(TAG_MATCH, TAG_CURRENT, TAG_LABEL)
        for label, (start, _) in zip(generate_labels(len(matches)), matches):
            self.host.add_label(start, label)

    def commit(self, span: Span) -> Outcome:
        logging.info(f"Jumping to {span}")
        self.selected = span
        self.host.move_to(span)
        self.exit()
        return Outcome.COMMIT

    def abort(self, message: str) -> Outcome:
        logging.info(message)
        self.host.notify(message)
        self.exit()
        return Outcome.ABORT

    def exit(self):
        """End the session, remembering the pattern. Safe to call twice."""
        if self.finished:
            return
        self.finished = True
        if self.pattern:
            self.memory.set(self.pattern)
        self.host.remove_tags(TAG_MATCH, TAG_CURRENT, TAG_LABEL, TAG_DIM)
        self.host.flush()
        self.host.reset_mode()


# ============================================================================
# Rendering
# ============================================================================


class Screen(ABC):
    # Common attributes for both implementations
    A_NORMAL = 0
    A_DIM = 1
    A_MATCH = 2
    A_CURRENT = 3
    A_LABEL = 4

    @abstractmethod
    def transform_attr(self, attr):
        """Transform generic attributes to implementation-specific attributes"""
        pass

    @abstractmethod
    def init(self):
        pass

    @abstractmethod
    def cleanup(self):
        pass

    @abstractmethod
    def addstr(self, y: int, x: int, text: str, attr=0):
        pass

    @abstractmethod
    def refresh(self):
        pass


class AnsiSequence(Screen):
    ESC = "\033"
    HIDE_CURSOR = f"{ESC}[?25l"
    SHOW_CURSOR = f"{ESC}[?25h"
    RESET = f"{ESC}[0m"
    DIM = f"{ESC}[2m"
    RED = f"{ESC}[1;31m"
    GREEN = f"{ESC}[1;32m"
    GREEN_REVERSE = f"{ESC}[1;7;32m"

    def init(self):
        sys.stdout.write(self.HIDE_CURSOR)
        sys.stdout.flush()

    def cleanup(self):
        sys.stdout.write(self.SHOW_CURSOR)
        sys.stdout.write(self.RESET)
        sys.stdout.flush()

    def transform_attr(self, attr):
        if attr == self.A_DIM:
            return self.DIM
        elif attr == self.A_MATCH:
            return self.GREEN
        elif attr == self.A_CURRENT:
            return self.GREEN_REVERSE
        elif attr == self.A_LABEL:
            return self.RED
        return ""

    def addstr(self, y: int, x: int, text: str, attr=0):
        attr_str = self.transform_attr(attr)
        if attr_str:
            sys.stdout.write(f"{self.ESC}[{y + 1};{x + 1}H{attr_str}{text}{self.RESET}")
        else:
            sys.stdout.write(f"{self.ESC}[{y + 1};{x + 1}H{text}")

    def refresh(self):
        sys.stdout.flush()


class Curses(Screen):
    def __init__(self):
        self.stdscr = None

    def init(self):
        self.stdscr = curses.initscr()
        curses.start_color()
        curses.use_default_colors()
        curses.init_pair(1, curses.COLOR_RED, -1)
        curses.init_pair(2, curses.COLOR_GREEN, -1)
        curses.noecho()
        curses.cbreak()
        curses.curs_set(0)
        self.stdscr.keypad(True)

    def cleanup(self):
        if not self.stdscr:
            return
        curses.nocbreak()
        self.stdscr.keypad(False)
        curses.echo()
        curses.endwin()

    def transform_attr(self, attr):
        if attr == self.A_DIM:
            return curses.A_DIM
        elif attr == self.A_MATCH:
            return curses.color_pair(2) | curses.A_BOLD
        elif attr == self.A_CURRENT:
            return curses.color_pair(2) | curses.A_BOLD | curses.A_REVERSE
        elif attr == self.A_LABEL:
            return curses.color_pair(1) | curses.A_BOLD
        return curses.A_NORMAL

    def addstr(self, y: int, x: int, text: str, attr=0):
        try:
            self.stdscr.addstr(y, x, text, self.transform_attr(attr))
        except curses.error:
            pass

    def refresh(self):
        self.stdscr.refresh()


def setup_logging(use_curses: bool = False):
    """Initialize logging configuration based on tmux options"""
    debug = get_tmux_option("@sneak-debug", "false").lower() == "true"
    perf = get_tmux_option("@sneak-perf", "false").lower() == "true"

    if not (debug or perf):
        logging.getLogger().disabled = True
        return

    log_file = os.path.expanduser("~/tmux-sneak.log")
    logging.basicConfig(
        filename=log_file,
        level=logging.DEBUG,
        format=f"%(asctime)s - %(levelname)s - {'CURSE' if use_curses else 'ANSI'} - %(message)s",
    )


def perf_timer(func_name=None):
    """Performance timing decorator that only logs when perf is enabled"""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            perf = get_tmux_option("@sneak-perf", "false").lower() == "true"
            if not perf:
                return func(*args, **kwargs)

            name = func_name or func.__name__
            start_time = time.perf_counter()
            result = func(*args, **kwargs)
            end_time = time.perf_counter()

            logging.info(f"{name} took: {end_time - start_time:.3f} seconds")
            return result

        return wrapper

    return decorator


@functools.lru_cache(maxsize=1024)
def get_char_width(char: str) -> int:
    """Get visual width of a single character with caching"""
    return 2 if unicodedata.east_asian_width(char) in "WF" else 1


@functools.lru_cache(maxsize=1024)
def get_string_width(s: str) -> int:
    """Calculate visual width of string, accounting for double-width characters"""
    return sum(map(get_char_width, s))


def get_true_position(line, target_col):
    """Calculate true position accounting for wide characters"""
    visual_pos = 0
    true_pos = 0
    while true_pos < len(line) and visual_pos < target_col:
        visual_pos += get_char_width(line[true_pos])
        true_pos += 1
    return true_pos


# ============================================================================
# tmux
# ============================================================================


def sh(cmd: list) -> str:
    """Execute shell command with optional logging"""
    try:
        result = subprocess.run(
            cmd, shell=False, text=True, capture_output=True, check=True
        ).stdout

        logging.debug(f"Command: {cmd}")
        logging.debug(f"Result: {result}")
        return result
    except subprocess.CalledProcessError as e:
        logging.error(f"Error executing {cmd}: {str(e)}")
        raise


class PaneInfo:
    __slots__ = (
        "pane_id",
        "active",
        "start_y",
        "height",
        "start_x",
        "width",
        "lines",
        "copy_mode",
        "scroll_position",
        "cursor_y",
        "cursor_x",
    )

    def __init__(self, pane_id, active, start_y, height, start_x, width):
        self.pane_id = pane_id
        self.active = active
        self.start_y = start_y
        self.height = height
        self.start_x = start_x
        self.width = width
        self.lines = []
        self.copy_mode = False
        self.scroll_position = 0
        self.cursor_y = 0
        self.cursor_x = 0


def get_initial_tmux_info(target: Optional[str] = None) -> List[PaneInfo]:
    """Get the panes of the target's window in one call"""
    format_str = (
        "#{pane_id},#{window_zoomed_flag},#{pane_active},"
        + "#{pane_top},#{pane_height},#{pane_left},#{pane_width},"
        + "#{pane_in_mode},#{scroll_position},"
        + "#{cursor_y},#{cursor_x},#{copy_cursor_y},#{copy_cursor_x}"
    )

    cmd = ["tmux", "list-panes", "-F", format_str]
    if target:
        cmd[2:2] = ["-t", target]
    output = sh(cmd).strip()

    panes = []
    for line in output.split("\n"):
        if not line:
            continue

        (
            pane_id,
            zoomed,
            active,
            top,
            height,
            left,
            width,
            in_mode,
            scroll_pos,
            cursor_y,
            cursor_x,
            copy_cursor_y,
            copy_cursor_x,
        ) = line.split(",")

        # A zoomed window only shows its active pane
        if zoomed == "1" and active != "1":
            continue

        pane = PaneInfo(
            pane_id=pane_id,
            active=active == "1",
            start_y=int(top),
            height=int(height),
            start_x=int(left),
            width=int(width),
        )
        pane.copy_mode = in_mode == "1"
        pane.scroll_position = int(scroll_pos or 0)
        if pane.copy_mode:
            pane.cursor_y = int(copy_cursor_y)
            pane.cursor_x = int(copy_cursor_x)
        else:
            pane.cursor_y = int(cursor_y)
            pane.cursor_x = int(cursor_x)

        panes.append(pane)

    return panes


def get_current_window_id():
    """Return the window_id for the pane running this script"""
    pane_target = os.environ.get("TMUX_PANE")
    cmd = ["tmux", "display-message", "-p"]
    if pane_target:
        cmd.extend(["-t", pane_target])
    cmd.append("#{window_id}")
    return sh(cmd).strip()


def tmux_capture_pane(pane):
    """Capture the lines currently visible in pane"""
    if not pane.height or not pane.width:
        return []

    cmd = ["tmux", "capture-pane", "-p", "-t", pane.pane_id]
    if pane.scroll_position > 0:
        end_pos = -(pane.scroll_position - pane.height + 1)
        cmd.extend(["-S", str(-pane.scroll_position), "-E", str(end_pos)])

    return sh(cmd)[:-1].split("\n")[: pane.height]


def tmux_move_cursor(pane, line_num, true_col):
    cmds = [["tmux", "select-pane", "-t", pane.pane_id]]

    if not pane.copy_mode:
        cmds.append(["tmux", "copy-mode", "-t", pane.pane_id])

    cmds.append(["tmux", "send-keys", "-X", "-t", pane.pane_id, "top-line"])
    # start-of-line has to come before cursor-down, or wrapped lines jump
    # back to the start of the logical line
    cmds.append(["tmux", "send-keys", "-X", "-t", pane.pane_id, "start-of-line"])

    if line_num > 0:
        cmds.append(
            ["tmux", "send-keys", "-X", "-t", pane.pane_id, "-N", str(line_num), "cursor-down"]
        )
    if true_col > 0:
        cmds.append(
            ["tmux", "send-keys", "-X", "-t", pane.pane_id, "-N", str(true_col), "cursor-right"]
        )

    for cmd in cmds:
        sh(cmd)


def load_last_pattern(memory: SessionMemory):
    """Seed memory from the tmux server, which outlives each jump"""
    # show-options -g quotes and escapes values, -v prints them as stored
    last = sh(["tmux", "show-option", "-gqv", "@sneak-last"])
    if last.endswith("\n"):
        last = last[:-1]
    if last:
        memory.set(last)


def save_last_pattern(memory: SessionMemory):
    last = memory.get()
    if last:
        # A trailing ; would end the tmux command
        if last.endswith(";"):
            last = last[:-1] + "\\;"
        sh(["tmux", "set-option", "-g", "@sneak-last", last])


@perf_timer()
def draw_all_panes(
    panes,
    terminal_height,
    screen,
    vertical_border: str = "│",
    horizontal_border: str = "─",
):
    """Draw the content and borders of every pane"""
    max_x = max((p.start_x + p.width for p in panes), default=0)
    sorted_panes = sorted(panes, key=lambda p: p.start_y + p.height)

    for pane in sorted_panes:
        visible_height = min(pane.height, terminal_height - pane.start_y)

        for y, line in enumerate(pane.lines[:visible_height]):
            padding = max(pane.width - get_string_width(line), 0)
            screen.addstr(pane.start_y + y, pane.start_x, (line + " " * padding)[: pane.width])

        if pane.start_x + pane.width < max_x:
            for y in range(pane.start_y, pane.start_y + visible_height):
                screen.addstr(
                    y, pane.start_x + pane.width, vertical_border, screen.A_DIM
                )

        end_y = pane.start_y + visible_height
        if end_y < terminal_height and pane is not sorted_panes[-1]:
            screen.addstr(
                end_y, pane.start_x, horizontal_border * pane.width, screen.A_DIM
            )

    screen.refresh()


class PaneHost(Host):
    """A tmux pane's visible content, drawn on the overlay screen.

    Offsets index into the pane lines joined with newlines.
    """

    def __init__(self, pane: PaneInfo, screen: Screen, case_sensitive: bool = True):
        self.pane = pane
        self.screen = screen
        self.case_sensitive = case_sensitive
        self.text = "\n".join(pane.lines)
        self.line_starts = [0]
        for line in pane.lines[:-1]:
            self.line_starts.append(self.line_starts[-1] + len(line) + 1)
        self.tags = {TAG_MATCH: [], TAG_CURRENT: [], TAG_DIM: []}
        self.labels = []
        self.active = True

    def position_of(self, offset: int) -> Tuple[int, int]:
        line_num = bisect.bisect_right(self.line_starts, offset) - 1
        return line_num, offset - self.line_starts[line_num]

    def visible_range(self) -> Span:
        return 0, len(self.text)

    def caret(self) -> int:
        if self.pane.cursor_y >= len(self.pane.lines):
            return len(self.text)
        line = self.pane.lines[self.pane.cursor_y]
        return self.line_starts[self.pane.cursor_y] + get_true_position(
            line, self.pane.cursor_x
        )

    def search(self, regex: str, start: int, end: int) -> List[Span]:
        flags = 0 if self.case_sensitive else re.IGNORECASE
        return [m.span() for m in re.compile(regex, flags).finditer(self.text, start, end)]

    def add_tag(self, tag: str, span: Span):
        self.tags[tag].append(span)

    def add_label(self, position: int, label: str):
        self.labels.append((position, label))

    def remove_tags(self, *tags: str):
        for tag in tags:
            if tag == TAG_LABEL:
                self.labels = []
            else:
                self.tags[tag] = []

    def move_to(self, span: Span):
        line_num, col = self.position_of(span[0])
        tmux_move_cursor(self.pane, line_num, col)

    def reset_mode(self):
        self.active = False

    def notify(self, message: str):
        # display-message expands formats, and #() runs a command
        sh(["tmux", "display-message", message.replace("#", "##")])

    def flush(self):
        self.render()

    def _attrs(self) -> list:
        """Attribute of every offset, later tags drawn over earlier ones"""
        attrs = [self.screen.A_NORMAL] * (len(self.text) + 1)
        for tag, attr in (
            (TAG_DIM, self.screen.A_DIM),
            (TAG_MATCH, self.screen.A_MATCH),
            (TAG_CURRENT, self.screen.A_CURRENT),
        ):
            for start, end in self.tags[tag]:
                attrs[start:end] = [attr] * (end - start)
        return attrs

    def render(self):
        """Redraw the pane with its current decorations"""
        if not self.active:
            return
        pane = self.pane
        attrs = self._attrs()
        labels = dict(self.labels)
        for line_num, line in enumerate(pane.lines[: pane.height]):
            y = pane.start_y + line_num
            x = pane.start_x
            offset = self.line_starts[line_num]
            run, run_x, run_attr = "", x, None
            for ch in line:
                if x - pane.start_x >= pane.width:
                    break
                if offset in labels:
                    # Labels conceal the first cell of the match
                    text = labels[offset] + " " * (get_char_width(ch) - 1)
                    attr = self.screen.A_LABEL
                else:
                    text, attr = ch, attrs[offset]
                if attr != run_attr:
                    if run:
                        self.screen.addstr(y, run_x, run, run_attr)
                    run, run_x, run_attr = "", x, attr
                run += text
                x += get_char_width(ch)
                offset += 1
            if run:
                self.screen.addstr(y, run_x, run, run_attr)
        self.screen.refresh()


def run_session(sneak: Sneak, input_str=None) -> Outcome:
    """Feed keys to sneak until the session ends"""
    while True:
        raw = getch(input_str)
        if not raw:
            # Out of input
            sneak.exit()
            return Outcome.ABORT
        if input_str is not None:
            input_str = ""
        for key in decode_keys(raw):
            outcome = sneak.send_key(key)
            if outcome is not Outcome.CONTINUE:
                return outcome


@perf_timer("Total execution")
def main(screen: Screen, config: Config, memory: SessionMemory = LAST):
    target = sys.argv[1] if len(sys.argv) > 1 else None
    panes = get_initial_tmux_info(target)
    for pane in panes:
        pane.lines = tmux_capture_pane(pane)

    current_pane = next(p for p in panes if p.active)
    logging.debug(
        f"Cursor position: {current_pane.pane_id}, {current_pane.cursor_y}, {current_pane.cursor_x}"
    )

    load_last_pattern(memory)
    host = PaneHost(current_pane, screen, config.case_sensitive)
    sneak = Sneak.from_config(config, host, memory)

    terminal_height = max(p.start_y + p.height for p in panes)
    draw_all_panes(
        panes,
        terminal_height,
        screen,
        config.vertical_border,
        config.horizontal_border,
    )
    sneak.enter()
    sh(["tmux", "select-window", "-t", get_current_window_id()])

    try:
        return run_session(sneak)
    finally:
        sneak.exit()
        save_last_pattern(memory)


if __name__ == "__main__":
    config = Config.from_tmux()
    setup_logging(config.use_curses)
    screen: Screen = Curses() if config.use_curses else AnsiSequence()
    screen.init()
    try:
        main(screen, config)
    except KeyboardInterrupt:
        logging.info("Operation cancelled by user")
    except Exception as e:
        logging.error(f"Error occurred: {str(e)}", exc_info=True)
    finally:
        screen.cleanup()
