#!/usr/bin/env python3
"""
  R A I N
  Falling character trails for a character-cell terminal.

  Each trail is a vertical run of glyphs with a bright head and a tail that
  fades toward a dim green. Glyphs flicker: every cell draws a fresh glyph
  each frame. Trails that have fully scrolled past the bottom edge are
  recycled in place, so the number of trails on screen never changes.

  Controls:
    q / ESC   quit

  Options (environment defaults in brackets):
    --density N     grid cells per trail              [RAIN_DENSITY, 30]
    --charset S     glyphs to draw from               [RAIN_CHARSET]
    --delay SEC     fixed sleep between frames        [0.05]
    --frames N      stop after N frames               [run until quit]
    --seed N        seed the random source            [unseeded]
    --stats-log P   write per-frame CSV telemetry to P
"""

from __future__ import annotations

import argparse
import curses
import os
import sys
import time
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import IO, ClassVar, Iterable, Mapping, Sequence

import numpy as np

# ── Color cube ──────────────────────────────────────────────────────────
# Channels live on the xterm 6x6x6 cube (indices 16..231).
MAX_CHANNEL = 5
CUBE_BASE = 16

# ── Trail shape ─────────────────────────────────────────────────────────
MIN_TRAIL_LENGTH = 3
MAX_TRAIL_LENGTH = 16      # exclusive
MIN_TRAIL_SPEED = 1
MAX_TRAIL_SPEED = 3        # exclusive, cells per frame

# Grid dimensions are 1-indexed cells; terminals report them as 16-bit values
MAX_GRID_DIMENSION = 65535

# ── Defaults ────────────────────────────────────────────────────────────
DEFAULT_DENSITY = 30
DEFAULT_CHARSET = "ｱｶｻﾀﾅ012ΣΨλ"  # half-width katakana, digits, greek
DEFAULT_DELAY = 0.05

ESCAPE = 27
QUIT_KEYS = frozenset({ord("q"), ord("Q"), ESCAPE})


class StartupError(RuntimeError):
    """The terminal cannot host the animation (raised before any trail exists)."""


# ═══════════════════════════════════════════════════════════════════════
#  Colors and gradients
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Color:
    """A point on the 6-level color cube."""

    r: int
    g: int
    b: int

    def __post_init__(self) -> None:
        for channel in (self.r, self.g, self.b):
            if not 0 <= channel <= MAX_CHANNEL:
                raise ValueError(
                    f"color channel {channel} outside [0, {MAX_CHANNEL}]"
                )

    def cube_index(self) -> int:
        """xterm-256 palette index of this color."""
        return CUBE_BASE + 36 * self.r + 6 * self.g + self.b


BRIGHT = Color(3, 5, 3)   # head: pale green
DIM = Color(0, 1, 0)      # tail: nearly black green


def _channel_ramp(start: int, end: int, steps: int) -> np.ndarray:
    step = (end - start) // steps
    if step == 0 and start != end:
        step = 1 if end > start else -1
    lo, hi = min(start, end), max(start, end)
    return np.clip(start + np.arange(steps) * step, lo, hi)


@lru_cache(maxsize=None)
def interpolate(start: Color, end: Color, steps: int) -> tuple[Color, ...]:
    """Fade from ``start`` toward ``end`` over ``steps`` colors.

    Each channel moves by ``floor((end - start) / steps)`` per step, forced
    to at least one level when the channels differ, and is clamped so it
    never passes the end value. Raises ``ValueError`` when ``steps < 1``.
    """
    if steps < 1:
        raise ValueError(f"gradient needs at least one step, got {steps}")

    rs = _channel_ramp(start.r, end.r, steps).tolist()
    gs = _channel_ramp(start.g, end.g, steps).tolist()
    bs = _channel_ramp(start.b, end.b, steps).tolist()
    return tuple(Color(r, g, b) for r, g, b in zip(rs, gs, bs))


def gradient_palette() -> list[Color]:
    """Every color a trail of any legal length can use, head first."""
    colors: dict[Color, None] = {}
    for length in range(MIN_TRAIL_LENGTH, MAX_TRAIL_LENGTH):
        colors.update(dict.fromkeys(interpolate(BRIGHT, DIM, length)))
    return list(colors)


@dataclass
class ColorMap:
    """Maps cube colors onto curses attributes.

    With 256 colors each cube color gets its own pair. On smaller palettes
    everything is drawn green, and the channel brightness becomes bold/dim.
    Terminals without color (or without a default background) get the
    bold/dim attributes alone. A ColorMap that was never set up returns
    plain attributes, which keeps rendering usable without a terminal.
    """

    _attrs: dict[Color, int] = field(default_factory=dict)

    def setup(self, colors: Iterable[Color]) -> None:
        colors = list(colors)
        if not curses.has_colors():
            self._monochrome(colors)
            return
        try:
            curses.start_color()
            curses.use_default_colors()
        except curses.error:
            self._monochrome(colors)
            return

        if curses.COLORS < 256:
            curses.init_pair(1, curses.COLOR_GREEN, -1)
            base = curses.color_pair(1)
            for color in colors:
                self._attrs[color] = base | brightness_attr(color)
            return

        max_pairs = curses.COLOR_PAIRS - 1
        pair_id = 1
        for color in colors:
            if pair_id > max_pairs:
                break
            curses.init_pair(pair_id, color.cube_index(), -1)
            self._attrs[color] = curses.color_pair(pair_id)
            pair_id += 1

    def _monochrome(self, colors: list[Color]) -> None:
        for color in colors:
            self._attrs[color] = brightness_attr(color)

    def attr(self, color: Color) -> int:
        return self._attrs.get(color, 0)


def brightness_attr(color: Color) -> int:
    level = max(color.r, color.g, color.b)
    if level >= 4:
        return curses.A_BOLD
    if level <= 1:
        return curses.A_DIM
    return curses.A_NORMAL


# ═══════════════════════════════════════════════════════════════════════
#  Trails
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GridSize:
    """Addressable cells of the output window, captured once per run."""

    width: int
    height: int

    def __post_init__(self) -> None:
        for name, value in (("width", self.width), ("height", self.height)):
            if not 1 <= value <= MAX_GRID_DIMENSION:
                raise ValueError(
                    f"grid {name} {value} outside [1, {MAX_GRID_DIMENSION}]"
                )

    @property
    def cells(self) -> int:
        return self.width * self.height


@dataclass
class Position:
    """1-indexed cell. ``y`` may run past the bottom of the grid."""

    x: int
    y: int


@dataclass
class Trail:
    """A falling run of ``length`` cells extending upward from ``bottom``."""

    bottom: Position
    length: int
    speed: int

    @classmethod
    def spawn_random(cls, grid: GridSize, rng: np.random.Generator) -> Trail:
        """A fresh trail somewhere on the grid.

        Columns and rows are drawn from the closed ranges ``[1, width]`` and
        ``[1, height]``; length and speed from the half-open ranges
        ``[MIN_TRAIL_LENGTH, MAX_TRAIL_LENGTH)`` and
        ``[MIN_TRAIL_SPEED, MAX_TRAIL_SPEED)``.
        """
        x = int(rng.integers(1, grid.width + 1))
        y = int(rng.integers(1, grid.height + 1))
        length = int(rng.integers(MIN_TRAIL_LENGTH, MAX_TRAIL_LENGTH))
        speed = int(rng.integers(MIN_TRAIL_SPEED, MAX_TRAIL_SPEED))
        return cls(Position(x, y), length, speed)

    @property
    def top(self) -> int:
        return self.bottom.y - self.length

    def is_visible(self, grid: GridSize) -> bool:
        # True until the tail has cleared the bottom edge, not "on screen"
        return self.top < grid.height

    def advance(self) -> None:
        self.bottom.y += self.speed


# ═══════════════════════════════════════════════════════════════════════
#  Configuration
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RainConfig:
    """Run settings. Invalid values never make it past construction."""

    density: int = DEFAULT_DENSITY
    charset: str = DEFAULT_CHARSET
    delay: float = DEFAULT_DELAY
    frames: int | None = None
    seed: int | None = None
    stats_path: Path | None = None

    def __post_init__(self) -> None:
        if self.density < 1:
            raise ValueError(f"density must be a positive integer, got {self.density}")
        if not self.charset:
            raise ValueError("charset must contain at least one glyph")
        if self.delay < 0:
            raise ValueError(f"delay must not be negative, got {self.delay}")
        if self.frames is not None and self.frames < 0:
            raise ValueError(f"frames must not be negative, got {self.frames}")
        if self.seed is not None and self.seed < 0:
            raise ValueError(f"seed must not be negative, got {self.seed}")


def _positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {text!r}") from None
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return value


def _non_negative_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value}")
    return value


def _non_negative_float(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value}")
    return value


def _non_empty(text: str) -> str:
    if not text:
        raise argparse.ArgumentTypeError("charset must not be empty")
    return text


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rain", description="Falling character rain for the terminal"
    )
    parser.add_argument("--density", type=_positive_int, default=None,
                        help=f"Grid cells per trail (default: $RAIN_DENSITY or {DEFAULT_DENSITY})")
    parser.add_argument("--charset", type=_non_empty, default=None,
                        help="Glyphs to draw from (default: $RAIN_CHARSET or a mixed set)")
    parser.add_argument("--delay", type=_non_negative_float, default=DEFAULT_DELAY,
                        help=f"Seconds to sleep between frames (default: {DEFAULT_DELAY})")
    parser.add_argument("--frames", type=_positive_int, default=None,
                        help="Stop after this many frames (default: run until quit)")
    parser.add_argument("--seed", type=_non_negative_int, default=None,
                        help="Seed for a reproducible run")
    parser.add_argument("--stats-log", type=Path, default=None,
                        help="Write per-frame telemetry CSV to this path")
    return parser


def parse_args(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> RainConfig:
    """Build a RainConfig from flags, falling back to the environment.

    Bad values end the process through ``argparse`` (exit status 2).
    """
    env = os.environ if environ is None else environ
    parser = build_parser()
    args = parser.parse_args(argv)

    density = args.density
    if density is None:
        raw = env.get("RAIN_DENSITY", "")
        if raw:
            try:
                density = _positive_int(raw)
            except argparse.ArgumentTypeError as exc:
                parser.error(f"RAIN_DENSITY: {exc}")
        else:
            density = DEFAULT_DENSITY

    charset = args.charset
    if charset is None:
        charset = env.get("RAIN_CHARSET", "") or DEFAULT_CHARSET

    return RainConfig(
        density=density,
        charset=charset,
        delay=args.delay,
        frames=args.frames,
        seed=args.seed,
        stats_path=args.stats_log,
    )


# ═══════════════════════════════════════════════════════════════════════
#  Simulation
# ═══════════════════════════════════════════════════════════════════════

def trail_count(grid: GridSize, density: int) -> int:
    return grid.cells // density


class Simulation:
    """
    A fixed arena of trail slots.

    The arena is sized once from the grid and density. Trails that have
    scrolled off are overwritten in their slot; nothing is ever inserted
    or removed.
    """

    def __init__(
        self, grid: GridSize, config: RainConfig, rng: np.random.Generator
    ) -> None:
        self.grid: GridSize = grid
        self.config: RainConfig = config
        self.rng: np.random.Generator = rng

        self.trails: list[Trail] = [
            Trail.spawn_random(grid, rng)
            for _ in range(trail_count(grid, config.density))
        ]

        self.frame: int = 0
        self.last_respawns: int = 0
        self.total_respawns: int = 0

    def tick(self) -> None:
        """Advance one frame: respawn pass, then move pass.

        The move pass also covers slots refilled by the respawn pass, so a
        new trail has already fallen by its speed when first drawn.
        """
        grid = self.grid
        trails = self.trails

        respawns = 0
        for slot, trail in enumerate(trails):
            if not trail.is_visible(grid):
                trails[slot] = Trail.spawn_random(grid, self.rng)
                respawns += 1

        for trail in trails:
            trail.advance()

        self.frame += 1
        self.last_respawns = respawns
        self.total_respawns += respawns


# ═══════════════════════════════════════════════════════════════════════
#  Rendering
# ═══════════════════════════════════════════════════════════════════════

def render(
    window: curses.window,
    sim: Simulation,
    cmap: ColorMap,
    charset: str,
    rng: np.random.Generator,
) -> int:
    """Redraw the whole window from the simulation. Returns cells drawn.

    Trails are drawn in slot order, so later slots win where trails overlap.
    Every cell gets a freshly drawn glyph each frame.
    """
    window.erase()

    height = sim.grid.height
    width = sim.grid.width
    n_glyphs = len(charset)

    _addstr = window.addstr
    _attr = cmap.attr
    _BOLD = curses.A_BOLD

    drawn = 0
    for trail in sim.trails:
        length = trail.length
        fade = interpolate(BRIGHT, DIM, length)
        glyphs = rng.integers(n_glyphs, size=length).tolist()
        x = trail.bottom.x
        bottom_y = trail.bottom.y

        for i in range(length):
            y = bottom_y - i
            if y < 1 or y > height:
                continue
            attr = _attr(fade[i])
            if i == 0:
                attr |= _BOLD
            try:
                _addstr(y - 1, x - 1, charset[glyphs[i]], attr)
            except curses.error:
                # The glyph lands, but the cursor cannot move past the last cell
                if (x, y) != (width, height):
                    raise
            drawn += 1

    return drawn


# ═══════════════════════════════════════════════════════════════════════
#  Stats logger
# ═══════════════════════════════════════════════════════════════════════

class StatsLogger:
    """Writes per-frame telemetry to CSV. Does nothing without a path."""

    HEADER: ClassVar[str] = "frame,time_s,trails,respawns,cells_drawn,event\n"

    def __init__(self, path: Path | None) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()

    def open(self) -> None:
        if self._path is None:
            return
        try:
            self._fh = open(self._path, "w", encoding="utf-8")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError:
            self._fh = None

    def log(
        self,
        frame: int,
        trails: int,
        respawns: int,
        cells_drawn: int,
        event: str = "",
    ) -> None:
        if self._fh is None:
            return
        t = time.monotonic() - self._t0
        try:
            self._fh.write(
                f"{frame},{t:.2f},{trails},{respawns},{cells_drawn},{event}\n"
            )
            if event or frame % 50 == 0:
                self._fh.flush()
        except OSError:
            self.close()

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


# ═══════════════════════════════════════════════════════════════════════
#  Main loop
# ═══════════════════════════════════════════════════════════════════════

def poll_quit(window: curses.window) -> bool:
    """Consume at most one pending key; never blocks."""
    try:
        key = window.getch()
    except curses.error:
        key = -1
    return key in QUIT_KEYS


def run_frames(
    window: curses.window,
    sim: Simulation,
    cmap: ColorMap,
    config: RainConfig,
    glyph_rng: np.random.Generator,
    logger: StatsLogger,
) -> int:
    """Tick, draw, poll, sleep until quit or the frame budget runs out.

    Returns the number of frames drawn. Write failures propagate.
    """
    frames = 0
    drawn = 0
    event = "budget"
    while config.frames is None or frames < config.frames:
        sim.tick()
        drawn = render(window, sim, cmap, config.charset, glyph_rng)
        window.refresh()
        frames += 1

        if poll_quit(window):
            event = "quit"
            break
        logger.log(sim.frame, len(sim.trails), sim.last_respawns, drawn)

        time.sleep(config.delay)

    logger.log(sim.frame, len(sim.trails), sim.last_respawns, drawn, event)
    return frames


def restore_terminal(window: curses.window) -> None:
    """Leave a blank screen, default colors and a visible cursor."""
    window.attrset(curses.A_NORMAL)
    try:
        window.erase()
        window.refresh()
    except (curses.error, OSError):
        # Output is already gone; the cursor and terminal mode still get restored
        pass
    try:
        curses.curs_set(1)
    except curses.error:
        pass


def main(stdscr: curses.window, config: RainConfig) -> int:
    logger = StatsLogger(config.stats_path)
    try:
        try:
            curses.curs_set(0)
        except curses.error:
            pass
        stdscr.nodelay(True)
        stdscr.timeout(0)

        rows, cols = stdscr.getmaxyx()
        try:
            grid = GridSize(cols, rows)
        except ValueError as exc:
            raise StartupError(f"unusable terminal size: {exc}") from exc

        cmap = ColorMap()
        cmap.setup(gradient_palette())

        sim_seed, glyph_seed = np.random.SeedSequence(config.seed).spawn(2)
        sim = Simulation(grid, config, np.random.default_rng(sim_seed))
        glyph_rng = np.random.default_rng(glyph_seed)

        logger.open()
        logger.log(sim.frame, len(sim.trails), 0, 0, "start")
        return run_frames(stdscr, sim, cmap, config, glyph_rng, logger)
    finally:
        try:
            restore_terminal(stdscr)
        finally:
            logger.close()


def cli(argv: Sequence[str] | None = None) -> int:
    """Entry point. Returns the process exit status."""
    config = parse_args(argv)
    try:
        curses.wrapper(main, config)
    except KeyboardInterrupt:
        pass
    except (StartupError, curses.error) as exc:
        print(f"rain: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"rain: output failed: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(cli())
