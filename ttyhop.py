#!/usr/bin/env python3
import argparse
import functools
import logging
import os
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Any, Callable, List, Optional, Sequence, Tuple

__version__ = "1.0.2"

DEFAULT_WAIT_MS = 200
POLL_INTERVAL_MS = 25
BAND_FACTOR = 0.75
DEFAULT_EDGE_STEPS = 5

EXIT_OK = 0
EXIT_USAGE = 64

USAGE = """usage: ttyhop [--check] [-v|--log] [-q|--quiet] [--no-edge] [--edge-steps N] [--wait-ms N] [--version] {left|l|right|r|shell zsh}
  left/l, right/r      hop between terminal windows
  shell zsh            print zsh eval script for keybindings
  --check              print trust + front app info (no focus change)
  -v, --log            enable logging (or set TTYHOP_LOG=1)
  -q, --quiet          disable logging
  --no-edge            don't land on the edge tmux pane after a window hop
  --edge-steps N       legacy, accepted and ignored (default 5)
  --wait-ms N          ms to wait for the new tmux client (default 200, env: TTYHOP_EDGE_WAIT_MS)
  --version            print version and exit"""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _is_set(raw: str) -> bool:
    return raw != ""


def _is_one(raw: str) -> bool:
    return raw == "1"


def _positive_int(raw: str) -> Optional[int]:
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


@dataclass
class Config:
    """Process-wide settings, read once from the environment."""

    in_tmux: bool = field(default=False, metadata={"env": "TMUX", "parse": _is_set})
    edge_wait_ms: int = field(
        default=DEFAULT_WAIT_MS,
        metadata={"env": "TTYHOP_EDGE_WAIT_MS", "parse": _positive_int},
    )
    log: bool = field(default=False, metadata={"env": "TTYHOP_LOG", "parse": _is_one})
    perf: bool = field(default=False, metadata={"env": "TTYHOP_PERF", "parse": _is_one})

    @classmethod
    def from_env(cls, environ=None) -> "Config":
        """Load configuration from environment variables."""
        environ = os.environ if environ is None else environ
        kwargs = {}
        for f in fields(cls):
            value = f.metadata["parse"](environ.get(f.metadata["env"], ""))
            if value is not None:
                kwargs[f.name] = value
        return cls(**kwargs)


def setup_logging(verbose: bool = False, perf: bool = False):
    """Send diagnostics to stderr when verbose or perf timing is on"""
    root = logging.getLogger()
    if not (verbose or perf):
        root.disabled = True
        return

    root.disabled = False
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.INFO,
        format="ttyhop: %(message)s",
    )


def perf_timer(func_name=None):
    """Time a Hopper method, logging only when its config enables perf"""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            if not self.config.perf:
                return func(self, *args, **kwargs)

            name = func_name or func.__name__
            start_time = time.perf_counter()
            try:
                return func(self, *args, **kwargs)
            finally:
                end_time = time.perf_counter()
                logging.info(f"{name} took: {end_time - start_time:.3f} seconds")

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CommandError(Exception):
    """An external command could not be spawned or exited non-zero."""


class UsageError(Exception):
    """Bad command line."""


class HopError(Exception):
    """A window hop that could not be completed.

    Each subclass carries the stable exit code reported to calling scripts.
    """

    exit_code = 1


class UnsupportedApp(HopError):
    exit_code = 1


class NoFocusedWindow(HopError):
    exit_code = 2


class GeometryUnavailable(HopError):
    exit_code = 3


class WindowListUnavailable(HopError):
    exit_code = 4


class NoEligibleNeighbor(HopError):
    exit_code = 5


class NoFrontApp(HopError):
    exit_code = 10


class PermissionDenied(HopError):
    exit_code = 20


class PlatformUnavailable(HopError):
    exit_code = 30


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def mid_x(self) -> float:
        return self.x + self.width / 2.0

    @property
    def mid_y(self) -> float:
        return self.y + self.height / 2.0


def midpoint(rect: Rect) -> Tuple[float, float]:
    return rect.mid_x, rect.mid_y


def horizontal_delta(a: Rect, b: Rect) -> float:
    """Signed distance from a's center to b's center; positive means b is east"""
    return b.mid_x - a.mid_x


def vertical_offset(a: Rect, b: Rect) -> float:
    return abs(b.mid_y - a.mid_y)


def in_band(a: Rect, b: Rect) -> bool:
    """True when b's center sits in a's horizontal band"""
    return vertical_offset(a, b) <= BAND_FACTOR * a.height


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------

CommandRunner = Callable[[Sequence[str]], str]


def sh(cmd: Sequence[str]) -> str:
    """Execute command and return its stripped stdout"""
    try:
        result = subprocess.run(
            list(cmd), shell=False, text=True, capture_output=True, check=True
        ).stdout
    except (OSError, subprocess.CalledProcessError) as e:
        logging.debug(f"Error executing {cmd}: {str(e)}")
        raise CommandError(str(e)) from e

    logging.debug(f"Command: {cmd}")
    logging.debug(f"Result: {result.strip()}")
    return result.strip()


# ---------------------------------------------------------------------------
# tmux records
# ---------------------------------------------------------------------------

CLIENT_FORMAT = "#{client_tty} #{client_active} #{client_activity}"
PANE_FORMAT = "#{pane_id} #{pane_at_left} #{pane_at_right}"


@dataclass
class ClientRecord:
    tty: str
    active: bool
    activity: int


@dataclass
class PaneRecord:
    pane_id: str
    at_left: bool
    at_right: bool


def parse_clients(output: str) -> List[ClientRecord]:
    """Parse `list-clients -F CLIENT_FORMAT` output"""
    clients = []
    for line in output.split("\n"):
        parts = line.split()
        if len(parts) < 3:
            continue
        try:
            activity = int(parts[2])
        except ValueError:
            activity = 0
        clients.append(ClientRecord(tty=parts[0], active=parts[1] == "1", activity=activity))
    return clients


def pick_active_client(clients: Sequence[ClientRecord]) -> Optional[ClientRecord]:
    """The client flagged active, else the most recently active one.

    Recency ties keep the first client seen.
    """
    best = None
    for client in clients:
        if client.active:
            return client
        if best is None or client.activity > best.activity:
            best = client
    return best


def parse_panes(output: str) -> List[PaneRecord]:
    """Parse `list-panes -F PANE_FORMAT` output"""
    panes = []
    for line in output.split("\n"):
        parts = line.split()
        if len(parts) != 3:
            continue
        pane_id, at_left, at_right = parts
        panes.append(PaneRecord(pane_id=pane_id, at_left=at_left == "1", at_right=at_right == "1"))
    return panes


def edge_pane(panes: Sequence[PaneRecord], east: bool) -> Optional[PaneRecord]:
    """Pane to land on after hopping: leftmost when moving east, rightmost when moving west"""
    for pane in panes:
        if east and pane.at_left:
            return pane
        if not east and pane.at_right:
            return pane
    return None


# ---------------------------------------------------------------------------
# Window system
# ---------------------------------------------------------------------------


class WindowSystem(ABC):
    """Access to the host's windows. Every query may return None on failure."""

    @abstractmethod
    def is_trusted(self) -> bool:
        """Whether this process may control other applications' windows"""
        pass

    @abstractmethod
    def front_app(self) -> Optional[Any]:
        """Handle of the frontmost application"""
        pass

    @abstractmethod
    def front_app_info(self) -> Tuple[str, str, str]:
        """(bundle id, display name, lookup source) of the frontmost application"""
        pass

    @abstractmethod
    def is_target_app(self, app) -> bool:
        """Whether app is the supported terminal emulator"""
        pass

    @abstractmethod
    def focused_window(self, app) -> Optional[Any]:
        pass

    @abstractmethod
    def all_windows(self, app) -> Optional[List[Any]]:
        pass

    @abstractmethod
    def rect(self, window) -> Optional[Rect]:
        pass

    @abstractmethod
    def focus(self, app, window):
        """Raise window, make it main and focused, and activate its process"""
        pass


def load_window_system() -> WindowSystem:
    if sys.platform != "darwin":
        raise PlatformUnavailable(f"window hopping is not supported on {sys.platform}")
    from ttyhop_macos import MacWindowSystem

    return MacWindowSystem()


# ---------------------------------------------------------------------------
# Neighbor search
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Candidate:
    window: Any
    rect: Rect
    dx: float
    dy: float
    horizontal: bool


def find_neighbor(
    current,
    current_rect: Rect,
    siblings: Sequence[Any],
    east: bool,
    rect_of: Callable[[Any], Optional[Rect]],
):
    """Nearest in-band sibling window in the requested direction, or None.

    Windows whose geometry cannot be read are skipped. Among equally distant
    candidates the first one in `siblings` wins.
    """
    best = None
    best_distance = float("inf")

    for i, window in enumerate(siblings):
        if window == current:
            continue
        rect = rect_of(window)
        if rect is None:
            continue

        cand = Candidate(
            window=window,
            rect=rect,
            dx=horizontal_delta(current_rect, rect),
            dy=vertical_offset(current_rect, rect),
            horizontal=in_band(current_rect, rect),
        )
        logging.debug(
            f"cand[{i}] mid=({rect.mid_x:.1f},{rect.mid_y:.1f}) "
            f"dx={cand.dx:.1f} dy={cand.dy:.1f} horiz={int(cand.horizontal)}"
        )
        if not cand.horizontal:
            continue

        distance = cand.dx if east else -cand.dx
        if 0 < distance < best_distance:
            best, best_distance = cand.window, distance

    return best


def _direction(east: bool) -> str:
    return "east" if east else "west"


# ---------------------------------------------------------------------------
# Hop engine
# ---------------------------------------------------------------------------


class Hopper:
    """Moves focus one pane or window to the left or right.

    tmux is asked first; only when it cannot move (no session, or already at
    the outer pane) are the terminal's windows searched by geometry.
    """

    def __init__(
        self,
        config: Config,
        run: Optional[CommandRunner] = None,
        windows: Optional[WindowSystem] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.run = run or sh
        self.sleep = sleep
        self._windows = windows

    @property
    def windows(self) -> WindowSystem:
        if self._windows is None:
            self._windows = load_window_system()
        return self._windows

    def tmux(self, *args: str) -> str:
        return self.run(["tmux", *args])

    def try_pane_move(self, east: bool) -> bool:
        """Select the neighboring tmux pane; False when that is not possible.

        `#{pane_at_left}` / `#{pane_at_right}` are 1 when the active pane is
        already the outer one on that side.
        """
        if not self.config.in_tmux:
            return False

        edge_key, flag = ("#{pane_at_right}", "-R") if east else ("#{pane_at_left}", "-L")
        try:
            old_id = self.tmux("display", "-p", "#{pane_id}")
            if not old_id:
                return False
            if self.tmux("display", "-p", edge_key) == "1":
                return False

            # no -t: acts on whichever pane is active right now
            self.tmux("select-pane", flag)
            new_id = self.tmux("display", "-p", "#{pane_id}")
        except CommandError:
            return False

        if not new_id or new_id == old_id:
            return False

        logging.debug(f"tmux: pane move {'right' if east else 'left'} via IPC")
        return True

    def active_client(self) -> Optional[str]:
        """tty of the tmux client that currently has the user's attention"""
        try:
            output = self.tmux("list-clients", "-F", CLIENT_FORMAT)
        except CommandError:
            return None
        client = pick_active_client(parse_clients(output))
        return client.tty if client else None

    @perf_timer("Edge landing")
    def select_edge_pane(self, east: bool, wait_ms: int = 0) -> Optional[PaneRecord]:
        """Select the outer pane of the window the user just hopped into.

        The new terminal window's tmux client becomes active asynchronously,
        so this polls every POLL_INTERVAL_MS until `wait_ms` (or the configured
        default) runs out. Returns the selected pane, or None.
        """
        budget = wait_ms if wait_ms > 0 else self.config.edge_wait_ms
        polls = budget // POLL_INTERVAL_MS
        logging.debug(f"using edge wait: {budget}ms")

        for _ in range(polls):
            self.sleep(POLL_INTERVAL_MS / 1000.0)

            tty = self.active_client()
            if not tty:
                continue

            try:
                window_id = self.tmux("display", "-p", "-t", tty, "#{window_id}")
                if not window_id:
                    continue
                output = self.tmux("list-panes", "-t", window_id, "-F", PANE_FORMAT)
            except CommandError:
                continue
            if not output:
                continue

            target = edge_pane(parse_panes(output), east)
            if target:
                try:
                    self.tmux("select-pane", "-t", target.pane_id)
                except CommandError as e:
                    logging.debug(f"tmux: edge select failed: {e}")
                logging.debug(
                    f"tmux: landed on edge pane {'LEFTMOST' if east else 'RIGHTMOST'} {target.pane_id}"
                )
            return target

        return None

    @perf_timer("Window hop")
    def focus_neighbor(self, east: bool, edge: bool = True, wait_ms: int = 0):
        """Focus the nearest terminal window east or west of the current one.

        Raises a HopError subclass describing why no window was focused.
        """
        windows = self.windows
        if not windows.is_trusted():
            raise PermissionDenied("accessibility not trusted")

        app = windows.front_app()
        if app is None:
            raise NoFrontApp("could not obtain front app")
        if not windows.is_target_app(app):
            raise UnsupportedApp("front app is not the terminal")

        current = windows.focused_window(app)
        if current is None:
            raise NoFocusedWindow("no focused window")
        current_rect = windows.rect(current)
        if current_rect is None:
            raise GeometryUnavailable("cannot read current window rect")

        siblings = windows.all_windows(app)
        if siblings is None:
            raise WindowListUnavailable("cannot list windows")
        logging.debug(f"windows in app: {len(siblings)}")

        best = find_neighbor(current, current_rect, siblings, east, windows.rect)
        if best is None:
            raise NoEligibleNeighbor(f"no neighbor {_direction(east)} found")

        logging.debug(f"focusing neighbor {_direction(east)}")
        windows.focus(app, best)

        if edge:
            self.select_edge_pane(east, wait_ms)
        return best

    @perf_timer("Total execution")
    def hop(self, east: bool, edge: bool = True, wait_ms: int = 0) -> int:
        """Run one hop and return its exit code"""
        if self.try_pane_move(east):
            logging.debug(f"tmux: moved pane {'right' if east else 'left'}")
            return EXIT_OK

        try:
            self.focus_neighbor(east, edge=edge, wait_ms=wait_ms)
        except HopError as e:
            logging.debug(f"denied: {e}")
            return e.exit_code
        return EXIT_OK


# ---------------------------------------------------------------------------
# Shell integration
# ---------------------------------------------------------------------------

ZSH_SCRIPT = """
# ttyhop keybindings for zsh: eval "$(ttyhop shell zsh)"
#
# ^h and ^l hop left/right. When ttyhop has nowhere to go the key falls back
# to whatever widget it was bound to before.

original_h_widget=$(bindkey '^h' | awk '{print $2}')

ttyhop-l() {
  ttyhop l
  if [[ $? -ne 0 ]]; then
    zle "${original_h_widget:-backward-delete-char}"
  fi
}

zle -N ttyhop-l
bindkey '^h' ttyhop-l


original_l_widget=$(bindkey '^l' | awk '{print $2}')

ttyhop-r() {
  ttyhop r
  if [[ $? -ne 0 ]]; then
    zle "${original_l_widget:-clear-screen}"
  fi
}

zle -N ttyhop-r
bindkey '^l' ttyhop-r

unset original_h_widget original_l_widget
"""

SHELL_SCRIPTS = {"zsh": ZSH_SCRIPT}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="ttyhop", usage=USAGE, add_help=False)
    parser.add_argument("-v", "--log", dest="verbose", action="store_true")
    parser.add_argument("-q", "--quiet", action="store_true")
    parser.add_argument("--check", action="store_true")
    parser.add_argument("--no-edge", dest="no_edge", action="store_true")
    parser.add_argument("--edge-steps", dest="edge_steps", default=str(DEFAULT_EDGE_STEPS))
    parser.add_argument("--wait-ms", dest="wait_ms", type=int, default=0)
    parser.add_argument("--version", action="store_true")
    parser.add_argument("command", nargs="*")
    return parser


def parse_edge_steps(raw: str) -> int:
    try:
        steps = int(raw)
    except ValueError:
        return DEFAULT_EDGE_STEPS
    return steps if 0 < steps < 50 else DEFAULT_EDGE_STEPS


def check(hopper: Hopper) -> int:
    """Print accessibility trust and frontmost app without moving focus"""
    try:
        windows = hopper.windows
    except HopError as e:
        print(f"ttyhop: {e}", file=sys.stderr)
        return e.exit_code

    trusted = windows.is_trusted()
    bid, name, source = windows.front_app_info()
    print(f'trusted={str(trusted).lower()} front_bid="{bid}" front_name="{name}" ({source})')
    return EXIT_OK


def run(argv: Sequence[str], hopper: Optional[Hopper] = None) -> int:
    args = build_parser().parse_args(list(argv))

    if args.version:
        print(f"ttyhop version {__version__}")
        return EXIT_OK

    config = hopper.config if hopper else Config.from_env()
    setup_logging(verbose=not args.quiet and (args.verbose or config.log), perf=config.perf)
    hopper = hopper or Hopper(config)

    if args.check:
        return check(hopper)

    if not args.command:
        raise UsageError("missing direction")
    name, rest = args.command[0], args.command[1:]

    if name in ("left", "l", "right", "r"):
        if rest:
            raise UsageError(f"unexpected arguments: {' '.join(rest)}")
        logging.debug(f"edge steps: {parse_edge_steps(args.edge_steps)} (unused)")
        return hopper.hop(name in ("right", "r"), edge=not args.no_edge, wait_ms=args.wait_ms)

    if name == "shell":
        if len(rest) != 1 or rest[0] not in SHELL_SCRIPTS:
            raise UsageError("shell expects one of: " + ", ".join(SHELL_SCRIPTS))
        sys.stdout.write(SHELL_SCRIPTS[rest[0]])
        return EXIT_OK

    raise UsageError(f"unknown command: {name}")


def main(argv: Optional[Sequence[str]] = None, hopper: Optional[Hopper] = None) -> int:
    try:
        return run(sys.argv[1:] if argv is None else argv, hopper)
    except UsageError:
        print(USAGE, file=sys.stderr)
        return EXIT_USAGE
    except KeyboardInterrupt:
        logging.info("Operation cancelled by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
