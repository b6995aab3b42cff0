# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Per-request accumulation of engine counters into a GenerationResult."""

from dataclasses import astuple, fields

from llm_session.domain.value_objects import EngineStats, GenerationResult

_ZERO = EngineStats()


class MetricsCollector:
    """Accumulates engine-reported counters for one request.

    Engines report cumulative counters per result handle, so each
    observation adds the increase since the previous one. Counters that go
    backwards (a new handle) restart from zero instead of subtracting.
    A missing snapshot is ignored.
    """

    def __init__(self) -> None:
        self._last = _ZERO
        self._totals = dict.fromkeys((f.name for f in fields(EngineStats)), 0)
        self.observations = 0

    def observe(self, stats: EngineStats | None) -> None:
        if stats is None:
            return
        self.observations += 1
        for f, current, previous in zip(fields(EngineStats), astuple(stats), astuple(self._last)):
            self._totals[f.name] += current - previous if current >= previous else current
        self._last = stats

    def finalize(self) -> GenerationResult:
        totals = self._totals
        return GenerationResult(
            prompt_tokens=totals["prompt_tokens"],
            generated_tokens=totals["generated_tokens"],
            prefill_us=totals["prefill_us"],
            decode_us=totals["decode_us"],
            aux_us={"vision": totals["vision_us"], "audio": totals["audio_us"]},
        )
