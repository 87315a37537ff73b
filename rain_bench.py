#!/usr/bin/env python3
"""
Profiling harness for the rain animation.

Runs the simulation + rendering pipeline headlessly under cProfile,
then prints a ranked breakdown of where time is spent.

Usage:
  python3 rain_bench.py                  # 500 frames, summary
  python3 rain_bench.py -n 1000          # 1000 frames
  python3 rain_bench.py --density 5      # crowded screen
  python3 rain_bench.py --line-timing    # tick/render split per frame
  python3 rain_bench.py --dump prof.out  # dump cProfile binary for snakeviz etc.
"""

from __future__ import annotations

import argparse
import cProfile
import curses
import pstats
import time
from dataclasses import dataclass
from io import StringIO

import numpy as np

from rain import (
    DEFAULT_DENSITY,
    ColorMap,
    GridSize,
    RainConfig,
    Simulation,
    _non_negative_int,
    _positive_int,
    render,
)


# ── Fake curses stubs for headless rendering ────────────────────────────

class FakeWindow:
    """Minimal curses.window stub that absorbs (and optionally records) writes.

    Bounds behave like curses: writing outside the window raises
    ``curses.error``, and so does writing the lower-right cell, after the
    glyph has been stored.
    """

    def __init__(
        self, rows: int, cols: int, record: bool = False, keys: list[int] | None = None
    ) -> None:
        self._rows = rows
        self._cols = cols
        self._record = record
        self._keys = list(keys or [])
        self.calls = 0
        self.erases = 0
        self.refreshes = 0
        self.attr = 0
        self.writes: list[tuple[int, int, str, int]] = []

    def getmaxyx(self) -> tuple[int, int]:
        return self._rows, self._cols

    def addstr(self, y: int, x: int, text: str, attr: int = 0) -> None:
        if not (0 <= y < self._rows and 0 <= x < self._cols):
            raise curses.error("addstr() returned ERR")
        self.calls += 1
        if self._record:
            self.writes.append((y, x, text, attr))
        if (y, x) == (self._rows - 1, self._cols - 1):
            raise curses.error("addstr() returned ERR")

    def getch(self) -> int:
        if self._keys:
            return self._keys.pop(0)
        return -1

    def attrset(self, attr: int) -> None:
        self.attr = attr

    def nodelay(self, flag: bool) -> None:
        pass

    def timeout(self, delay: int) -> None:
        pass

    def erase(self) -> None:
        self.erases += 1
        self.writes.clear()

    def refresh(self) -> None:
        self.refreshes += 1


@dataclass
class FrameTiming:
    """Cost of one tick + render pass."""

    tick_s: float
    render_s: float
    cells: int
    respawns: int


def time_frame(
    sim: Simulation,
    window: FakeWindow,
    cmap: ColorMap,
    charset: str,
    rng: np.random.Generator,
) -> FrameTiming:
    t0 = time.perf_counter()
    sim.tick()
    t1 = time.perf_counter()
    cells = render(window, sim, cmap, charset, rng)
    t2 = time.perf_counter()
    return FrameTiming(t1 - t0, t2 - t1, cells, sim.last_respawns)


def summarize(timings: list[FrameTiming], n_trails: int, delay: float) -> str:
    """Tick/render split, recycling rate and the frame rate the fixed sleep allows."""
    tick_ms = np.array([t.tick_s for t in timings]) * 1000
    render_ms = np.array([t.render_s for t in timings]) * 1000
    frame_ms = tick_ms + render_ms
    cells = np.array([t.cells for t in timings])
    respawns = np.array([t.respawns for t in timings])

    render_share = render_ms.sum() / max(frame_ms.sum(), 1e-12)
    recycled = respawns.sum() / max(n_trails * len(timings), 1)
    # The loop sleeps a fixed delay after each frame, so work time adds on top
    fps = 1000.0 / (delay * 1000 + frame_ms.mean())

    lines = [
        f"tick    {tick_ms.mean():7.3f} ms/frame  (worst {tick_ms.max():.3f})",
        f"render  {render_ms.mean():7.3f} ms/frame  (worst {render_ms.max():.3f})",
        f"render share of work: {100 * render_share:.0f}%",
        f"cells drawn/frame: {cells.mean():.0f}  respawns/frame: {respawns.mean():.2f}"
        f"  ({100 * recycled:.1f}% of trails recycled per frame)",
        f"at --delay {delay:g}s: {fps:.1f} fps",
    ]
    return "\n".join(lines)


def run_benchmark(
    n_frames: int,
    term_rows: int = 60,
    term_cols: int = 200,
    density: int = DEFAULT_DENSITY,
    seed: int | None = None,
    line_timing: bool = False,
    dump_path: str | None = None,
) -> None:
    """Run the benchmark for n_frames and report results."""

    config = RainConfig(density=density, seed=seed)
    grid = GridSize(term_cols, term_rows)
    sim_seed, glyph_seed = np.random.SeedSequence(seed).spawn(2)
    sim = Simulation(grid, config, np.random.default_rng(sim_seed))
    glyph_rng = np.random.default_rng(glyph_seed)
    window = FakeWindow(term_rows, term_cols)
    cmap = ColorMap()
    charset = config.charset

    print(f"Grid: {grid.width}x{grid.height}  "
          f"Trails: {len(sim.trails)}  "
          f"Density: {density}  "
          f"Frames: {n_frames}")
    print()

    if line_timing:
        timings = [time_frame(sim, window, cmap, charset, glyph_rng)
                   for _ in range(n_frames)]
        if timings:
            print(summarize(timings, len(sim.trails), config.delay))
        return

    # ── cProfile run ───────────────────────────────────────────────
    def profiled_run() -> None:
        for _ in range(n_frames):
            sim.tick()
            render(window, sim, cmap, charset, glyph_rng)

    profiler = cProfile.Profile()
    wall_t0 = time.perf_counter()
    profiler.runctx("profiled_run()", globals(), locals())
    wall_dt = time.perf_counter() - wall_t0

    print(f"Wall time: {wall_dt:.2f}s  ({wall_dt / max(n_frames, 1) * 1000:.2f}ms/frame)")

    if dump_path:
        profiler.dump_stats(dump_path)
        print(f"Profile data saved to: {dump_path}")

    # Only this project's functions; numpy and curses internals are noise here
    buf = StringIO()
    pstats.Stats(profiler, stream=buf).sort_stats("cumulative").print_stats(r"rain\.py", 12)
    print(buf.getvalue())


def main() -> None:
    parser = argparse.ArgumentParser(description="Profile the rain animation")
    parser.add_argument("-n", "--frames", type=_positive_int, default=500,
                        help="Number of frames to simulate (default: 500)")
    parser.add_argument("--rows", type=_positive_int, default=60,
                        help="Simulated terminal rows (default: 60)")
    parser.add_argument("--cols", type=_positive_int, default=200,
                        help="Simulated terminal cols (default: 200)")
    parser.add_argument("--density", type=_positive_int, default=DEFAULT_DENSITY,
                        help=f"Grid cells per trail (default: {DEFAULT_DENSITY})")
    parser.add_argument("--seed", type=_non_negative_int, default=None,
                        help="Seed for a reproducible run")
    parser.add_argument("--line-timing", action="store_true",
                        help="Tick/render split instead of cProfile")
    parser.add_argument("--dump", type=str, default=None,
                        help="Dump cProfile binary to this path")
    args = parser.parse_args()

    run_benchmark(
        n_frames=args.frames,
        term_rows=args.rows,
        term_cols=args.cols,
        density=args.density,
        seed=args.seed,
        line_timing=args.line_timing,
        dump_path=args.dump,
    )


if __name__ == "__main__":
    main()
