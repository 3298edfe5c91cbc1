"""
Ordered fallback over conversion strategies.

StrategyChain tries each strategy in preference order. Every attempt is
bounded by the strategy's initialization and execution timeouts, writes to
its own ``.part`` file, and must produce a plausibly sized output to count as
a success. Progress from each attempt is squeezed into that attempt's window
of the job-wide 0-99 range so callers see one monotonic progress curve across
fallbacks; 100 is reported only once the final output is in place.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .exceptions import ConversionError, StrategyTimeoutError
from .strategies import ConversionResult, ConversionStrategy
from .utils import remove_file_quietly, remove_part_files

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

# Highest value reachable before the output has been validated
PROGRESS_CEILING = 99


class _ProgressRelay:
    """Forwards progress to the caller on the event loop, never decreasing."""

    def __init__(self, on_progress: ProgressCallback, loop: asyncio.AbstractEventLoop) -> None:
        self._on_progress = on_progress
        self.loop = loop
        self.loop_thread = threading.get_ident()
        self.last = 0

    def emit(self, value: int, message: str) -> None:
        self.last = max(self.last, value)
        try:
            self._on_progress(self.last, message)
        except Exception:
            logger.exception("Progress callback failed")


class _AttemptSink:
    """
    Progress sink handed to one strategy attempt.

    Safe to call from worker threads. Reports arriving after the attempt was
    closed (e.g. from a timed-out thread) are dropped.
    """

    def __init__(self, relay: _ProgressRelay, lower: int, upper: int) -> None:
        self._relay = relay
        self._lower = lower
        self._upper = upper
        self.closed = False

    def __call__(self, progress: int, message: str) -> None:
        if self.closed:
            return
        progress = min(100, max(0, int(progress)))
        scaled = self._lower + (self._upper - self._lower) * progress // 100
        if threading.get_ident() == self._relay.loop_thread:
            self._deliver(scaled, message)
            return
        try:
            self._relay.loop.call_soon_threadsafe(self._deliver, scaled, message)
        except RuntimeError:
            # event loop already closed
            pass

    def _deliver(self, scaled: int, message: str) -> None:
        if not self.closed:
            self._relay.emit(scaled, message)

    def close(self) -> None:
        self.closed = True


class StrategyChain:
    """
    Runs strategies in order until one produces a valid output.

    Args:
        strategies: Strategies in preference order (highest fidelity first)
        min_output_bytes: Outputs smaller than this are treated as failures
    """

    def __init__(self, strategies: Sequence[ConversionStrategy], min_output_bytes: int = 1024) -> None:
        self.strategies: List[ConversionStrategy] = list(strategies)
        self.min_output_bytes = min_output_bytes

    @property
    def names(self) -> List[str]:
        return [strategy.name for strategy in self.strategies]

    def windows(self) -> List[Tuple[int, int]]:
        count = len(self.strategies)
        return [
            (index * PROGRESS_CEILING // count, (index + 1) * PROGRESS_CEILING // count)
            for index in range(count)
        ]

    async def run(self, input_path: Path, output_path: Path, on_progress: ProgressCallback) -> ConversionResult:
        """
        Convert ``input_path`` into ``output_path``.

        Returns:
            The winning strategy's result, pointing at ``output_path`` and with
            ``strategy`` and ``attempts`` added to its metadata

        Raises:
            ConversionError: If every strategy failed, timed out or produced an
                undersized output
        """
        if not self.strategies:
            raise ConversionError("No conversion strategies configured")

        relay = _ProgressRelay(on_progress, asyncio.get_running_loop())
        attempts: List[Tuple[str, str]] = []
        total = len(self.strategies)

        for index, (strategy, (lower, upper)) in enumerate(zip(self.strategies, self.windows())):
            relay.emit(lower, f"Converting with {strategy.name} ({index + 1}/{total})...")
            part_path = output_path.with_name(f"{output_path.name}.{strategy.name}.part")
            sink = _AttemptSink(relay, lower, upper)
            try:
                result = await self._attempt(strategy, input_path, part_path, sink)
            except Exception as exc:
                sink.close()
                remove_file_quietly(part_path)
                attempts.append((strategy.name, str(exc)))
                if isinstance(exc, StrategyTimeoutError):
                    logger.warning(f"Strategy {strategy.name} timed out during {exc.phase} ({exc.timeout:g}s)")
                else:
                    logger.warning(f"Strategy {strategy.name} failed: {type(exc).__name__}: {exc}")
                if index + 1 < total:
                    relay.emit(upper, f"{strategy.name} failed, falling back to {self.strategies[index + 1].name}...")
                continue

            sink.close()
            os.replace(part_path, output_path)
            remove_part_files(output_path)
            logger.info(f"Strategy {strategy.name} produced {result.file_size} bytes at {output_path}")
            relay.emit(100, f"Conversion completed with {strategy.name}")
            return replace(
                result,
                output_path=output_path,
                metadata={**result.metadata, "strategy": strategy.name, "attempts": index + 1},
            )

        last_name, last_error = attempts[-1]
        raise ConversionError(
            f"All {total} conversion strategies failed; last error from {last_name}: {last_error}",
            attempts=attempts,
        )

    async def _attempt(
        self,
        strategy: ConversionStrategy,
        input_path: Path,
        part_path: Path,
        sink: _AttemptSink,
    ) -> ConversionResult:
        try:
            try:
                await asyncio.wait_for(strategy.initialize(), timeout=strategy.init_timeout)
            except asyncio.TimeoutError:
                raise StrategyTimeoutError(strategy.name, "initialization", strategy.init_timeout) from None

            try:
                result = await asyncio.wait_for(
                    strategy.convert(input_path, part_path, sink),
                    timeout=strategy.exec_timeout,
                )
            except asyncio.TimeoutError:
                raise StrategyTimeoutError(strategy.name, "execution", strategy.exec_timeout) from None

            return self._validate(strategy, result, part_path)
        finally:
            try:
                await strategy.close()
            except Exception as exc:
                logger.warning(f"Failed to close strategy {strategy.name}: {exc}")

    def _validate(self, strategy: ConversionStrategy, result: Optional[ConversionResult], part_path: Path) -> ConversionResult:
        if result is None or not result.success:
            raise ValueError(f"{strategy.name} reported an unsuccessful conversion")
        try:
            size = part_path.stat().st_size
        except FileNotFoundError:
            raise ValueError(f"{strategy.name} did not produce an output file") from None
        if size == 0:
            raise ValueError(f"{strategy.name} produced an empty output file")
        if size < self.min_output_bytes:
            raise ValueError(
                f"{strategy.name} output is only {size} bytes (minimum {self.min_output_bytes}), treating as failure"
            )
        return replace(result, file_size=size)
