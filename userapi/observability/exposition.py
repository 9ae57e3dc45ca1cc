"""Text exposition format (version 0.0.4) rendering helpers."""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, Mapping
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from userapi.observability.instruments import MetricFamily


CONTENT_TYPE_LATEST = "text/plain; version=0.0.4; charset=utf-8"


def format_value(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer():
        return str(int(value))
    return repr(value)


def escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def merge_labels(
    sample_labels: Iterable[tuple[str, str]],
    default_labels: Mapping[str, str],
) -> tuple[tuple[str, str], ...]:
    """Merge default labels under the sample's own, sorted by name with ``le`` last."""

    merged = dict(default_labels)
    bucket_bound: str | None = None
    for name, value in sample_labels:
        if name == "le":
            bucket_bound = value
        else:
            merged[name] = value

    pairs = sorted(merged.items())
    if bucket_bound is not None:
        pairs.append(("le", bucket_bound))
    return tuple(pairs)


def format_labels(pairs: Iterable[tuple[str, str]]) -> str:
    body = ",".join(f'{name}="{escape_label_value(value)}"' for name, value in pairs)
    return f"{{{body}}}" if body else ""


def family_lines(family: MetricFamily, default_labels: Mapping[str, str]) -> Iterator[str]:
    yield f"# HELP {family.name} {escape_help(family.help)}"
    yield f"# TYPE {family.name} {family.kind}"
    for sample in family.samples:
        labels = format_labels(merge_labels(sample.labels, default_labels))
        yield f"{sample.name}{labels} {format_value(sample.value)}"
