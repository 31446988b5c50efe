from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Iterable, Mapping


@dataclass(frozen=True)
class CounterDef:
    name: str
    labels: tuple[str, ...] = ()
    help: str = ""


SERVICE_COUNTERS: tuple[CounterDef, ...] = (
    CounterDef("chat_turn_total", ("web", "memory", "intent"), "completed chat turns"),
    CounterDef("chat_command_total", ("command",), "memory commands served without a model call"),
    CounterDef("llm_attempt_total", ("model", "result"), "completion attempts per key draw"),
    CounterDef("llm_pool_exhausted_total", ("model",), "calls where every key was rate limited"),
    CounterDef("web_search_total", ("result",), "web digest lookups"),
    CounterDef("web_search_cache_hit_total", (), "web digests served from the store"),
    CounterDef("memory_extract_total", ("result",), "memory extraction outcomes"),
    CounterDef("kv_fallback_total", (), "startups on the in-process store"),
    CounterDef("kv_errors_total", ("op",), "failed key-value operations"),
)

LabelSet = tuple[tuple[str, str], ...]


class UnknownMetricError(KeyError):
    pass


class CounterRegistry:
    """Counters restricted to a declared set of names and label keys.

    Incrementing an undeclared counter or passing an undeclared label raises
    UnknownMetricError, so a typo at a call site fails in tests instead of
    silently creating a new series.
    """

    def __init__(self, counters: Iterable[CounterDef] = SERVICE_COUNTERS, service: str = "kami-chat") -> None:
        self.service = service
        self._counters = {counter.name: counter for counter in counters}
        self._series: dict[str, dict[LabelSet, int]] = {name: {} for name in self._counters}
        self._lock = Lock()

    def inc(self, name: str, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
        label_set = self._label_set(name, labels)
        with self._lock:
            series = self._series[name]
            series[label_set] = series.get(label_set, 0) + value

    def get(self, name: str, labels: Mapping[str, str] | None = None) -> int:
        label_set = self._label_set(name, labels)
        with self._lock:
            return self._series[name].get(label_set, 0)

    def total(self, name: str) -> int:
        self._declared(name)
        with self._lock:
            return sum(self._series[name].values())

    def snapshot(self) -> dict:
        with self._lock:
            counters = {}
            for name, counter in self._counters.items():
                series = self._series[name]
                counters[name] = {
                    "help": counter.help,
                    "total": sum(series.values()),
                    "series": [
                        {"labels": dict(label_set), "value": value}
                        for label_set, value in sorted(series.items())
                    ],
                }
        return {"service": self.service, "counters": counters}

    def reset(self) -> None:
        with self._lock:
            for series in self._series.values():
                series.clear()

    def _declared(self, name: str) -> CounterDef:
        counter = self._counters.get(name)
        if counter is None:
            raise UnknownMetricError(f"counter {name!r} is not declared")
        return counter

    def _label_set(self, name: str, labels: Mapping[str, str] | None) -> LabelSet:
        counter = self._declared(name)
        if not labels:
            return ()
        unknown = set(labels) - set(counter.labels)
        if unknown:
            raise UnknownMetricError(f"counter {name!r} has no labels {sorted(unknown)}")
        return tuple((key, str(labels[key])) for key in counter.labels if key in labels)


metrics = CounterRegistry()
