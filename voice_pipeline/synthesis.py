"""
Streaming speech output: synthesize reply segments ahead of playback need.

While segment i plays, segments i+1 .. i+depth are already being fetched, so
each fetch has at least one segment's playback time to finish. Playback order
is driven only by the completion of the previous segment's playback, never by
the order in which fetches complete.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, List, Optional, Sequence

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .capabilities import AudioOutput, SpeechSynthesizer
from .models import AudioClip, Segment
from .pcm import smooth_edges


class PipelineHandle:
    """
    One in-flight synthesis + playback run.

    `wait()` resolves to True on natural completion and to False once the run
    was cancelled.
    """

    def __init__(
        self,
        run_id: str,
        segments: Sequence[Segment],
        on_cancel: Callable[["PipelineHandle"], None],
    ):
        self.run_id = run_id
        self.segments = tuple(segments)
        self.played: List[int] = []
        self.skipped: List[int] = []

        self._on_cancel = on_cancel
        self._cancelled = False
        self._done: asyncio.Future = asyncio.get_running_loop().create_future()
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._done.done()

    def cancel(self) -> None:
        """Idempotent; a no-op once the run completed."""
        if self._cancelled or self._done.done():
            return
        self._cancelled = True
        self._on_cancel(self)
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._done.set_result(False)

    async def wait(self) -> bool:
        return await asyncio.shield(self._done)

    def _complete(self) -> bool:
        if self._cancelled or self._done.done():
            return False
        self._task = None
        self._done.set_result(True)
        return True


class SpeechSynthesisPipeline:
    """Gapless, cancellable playback of synthesized reply segments."""

    def __init__(
        self,
        synthesizer: Optional[SpeechSynthesizer],
        output: AudioOutput,
        *,
        voice: str = "Kore",
        lookahead_depth: int = 2,
        sample_rate: int = 24000,
        session_id: str = "local",
    ):
        if lookahead_depth < 1:
            raise ValueError("lookahead_depth must be at least 1")
        self._synthesizer = synthesizer
        self._output = output
        self._voice = voice
        self._lookahead = lookahead_depth
        self._sample_rate = sample_rate

        self.session_id = session_id
        self.emitter = EventEmitter(ObsComponent.SYNTHESIS)
        self.logger = get_logger(LogComponent.SYNTHESIS, session_id=session_id)

        self._active: Optional[PipelineHandle] = None
        self._run_count = 0

    @property
    def enabled(self) -> bool:
        return self._synthesizer is not None

    @property
    def active(self) -> Optional[PipelineHandle]:
        return self._active

    @property
    def lookahead_depth(self) -> int:
        return self._lookahead

    def play(
        self,
        segments: Sequence[Segment],
        on_complete: Optional[Callable[[], None]] = None,
    ) -> PipelineHandle:
        """Start a run; any previous run is cancelled first."""
        if self._synthesizer is None:
            raise RuntimeError("no speech synthesizer configured")
        self.cancel()

        self._run_count += 1
        handle = PipelineHandle(f"reply_{self._run_count}", segments, self._on_handle_cancel)
        self._active = handle
        self.emitter.emit(
            "pipeline.started",
            session_id=self.session_id,
            severity=Severity.INFO,
            correlation_id=handle.run_id,
            segment_count=len(handle.segments),
            lookahead_depth=self._lookahead,
        )
        handle._task = asyncio.get_running_loop().create_task(self._run(handle, on_complete))
        return handle

    def cancel(self) -> None:
        if self._active is not None:
            self._active.cancel()

    def _on_handle_cancel(self, handle: PipelineHandle) -> None:
        self._output.stop()
        if self._active is handle:
            self._active = None
        self.logger.info(
            "Pipeline cancelled",
            correlation_id=handle.run_id,
            played=len(handle.played),
            segment_count=len(handle.segments),
        )
        self.emitter.emit(
            "pipeline.cancelled",
            session_id=self.session_id,
            severity=Severity.INFO,
            correlation_id=handle.run_id,
            played=list(handle.played),
        )

    async def _run(self, handle: PipelineHandle, on_complete: Optional[Callable[[], None]]) -> None:
        segments = handle.segments
        fetches: Dict[int, asyncio.Task] = {}

        def prefetch(index: int) -> None:
            if index < len(segments) and index not in fetches and not handle.cancelled:
                fetches[index] = self._start_fetch(handle, segments[index])

        for index in range(min(self._lookahead, len(segments))):
            prefetch(index)

        for seg in segments:
            if handle.cancelled:
                return
            # shield: cancelling the run must not cancel the network fetch itself
            clip = await asyncio.shield(fetches.pop(seg.index))
            prefetch(seg.index + self._lookahead)

            if handle.cancelled:
                if clip is not None:
                    clip.release()
                return
            if clip is None:
                handle.skipped.append(seg.index)
                self.logger.warning(
                    "Segment skipped",
                    correlation_id=handle.run_id,
                    segment_index=seg.index,
                )
                continue

            try:
                await self._output.play(clip)
            except Exception as e:
                handle.skipped.append(seg.index)
                self.logger.warning(
                    "Segment playback failed",
                    correlation_id=handle.run_id,
                    segment_index=seg.index,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            finally:
                clip.release()

            if handle.cancelled:
                return
            handle.played.append(seg.index)

        if not handle._complete():
            return
        if self._active is handle:
            self._active = None
        self.emitter.emit(
            "pipeline.completed",
            session_id=self.session_id,
            severity=Severity.INFO,
            correlation_id=handle.run_id,
            played=list(handle.played),
            skipped=list(handle.skipped),
        )
        if on_complete is not None:
            try:
                on_complete()
            except Exception as e:
                self.logger.error(
                    "Completion callback failed",
                    correlation_id=handle.run_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    def _start_fetch(self, handle: PipelineHandle, seg: Segment) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._fetch(handle, seg))

        def _discard_if_cancelled(t: asyncio.Task) -> None:
            if handle.cancelled and not t.cancelled():
                clip = t.result()
                if clip is not None:
                    clip.release()

        task.add_done_callback(_discard_if_cancelled)
        return task

    async def _fetch(self, handle: PipelineHandle, seg: Segment) -> Optional[AudioClip]:
        """Synthesize one segment; any failure yields None so the segment is skipped."""
        t_start = time.perf_counter()
        try:
            pcm = await self._synthesizer.synthesize(seg.text, self._voice)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(
                "Segment synthesis failed",
                correlation_id=handle.run_id,
                segment_index=seg.index,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        latency_ms = int((time.perf_counter() - t_start) * 1000)
        if not pcm:
            self.logger.warning(
                "Segment synthesis returned no audio",
                correlation_id=handle.run_id,
                segment_index=seg.index,
                latency_ms=latency_ms,
            )
            return None

        if handle.cancelled:
            self.logger.debug(
                "Segment fetched after cancellation, discarded",
                correlation_id=handle.run_id,
                segment_index=seg.index,
            )
            return None

        self.logger.debug(
            "Segment fetched",
            correlation_id=handle.run_id,
            segment_index=seg.index,
            text_length=len(seg.text),
            latency_ms=latency_ms,
        )
        return AudioClip(
            segment_index=seg.index,
            pcm=smooth_edges(pcm, self._sample_rate),
            sample_rate=self._sample_rate,
        )
