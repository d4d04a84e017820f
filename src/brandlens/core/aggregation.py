"""
Deterministic aggregation of raw provider responses into pipeline summaries.

Every function here is pure: the same sorted input list always yields a
bit-identical summary. Floating point sums go through ``math.fsum`` so the
result does not depend on accumulation order, and every ranked list has an
explicit tie-break (frequency desc, first-seen index asc).

Denominators count every response handed in, including error-bearing ones that
carry neutral defaults. A response whose relevant field is malformed is left
out of that field's denominator and reported with a warning.
"""

import json
import math
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any
from urllib.parse import urlsplit

from ..observability.logging import get_logger
from .errors import AggregationError
from .models import RawResponse

logger = get_logger(__name__)

TOP_N = 10
SENTIMENTS = ("positive", "neutral", "negative")


class Summary:
    """Serialization helpers shared by the summary dataclasses."""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class RankedItem(Summary):
    name: str
    count: int


@dataclass(frozen=True)
class WebSearchSummary(Summary):
    used_any: bool = False
    count: int = 0
    hostnames: tuple[str, ...] = ()


@dataclass(frozen=True)
class ModelBreakdown(Summary):
    model: str
    mention_rate: float
    prompts_tested: int
    runs: int


@dataclass(frozen=True)
class SpontaneousSummary(Summary):
    total: int
    mentioned_count: int
    mention_rate: float
    top_mentions: tuple[RankedItem, ...] = ()
    model_breakdown: tuple[ModelBreakdown, ...] = ()
    web_search: WebSearchSummary = field(default_factory=WebSearchSummary)
    errors: int = 0
    excluded: int = 0


@dataclass(frozen=True)
class SentimentSummary(Summary):
    total: int
    overall_sentiment: str
    average_accuracy: float
    distribution: tuple[RankedItem, ...] = ()
    web_search: WebSearchSummary = field(default_factory=WebSearchSummary)
    errors: int = 0
    excluded: int = 0


@dataclass(frozen=True)
class ComparisonSummary(Summary):
    own_brand: str
    total: int
    wins: int
    win_rate: float
    key_differentiators: tuple[RankedItem, ...] = ()
    winners: tuple[RankedItem, ...] = ()
    web_search: WebSearchSummary = field(default_factory=WebSearchSummary)
    errors: int = 0
    excluded: int = 0


@dataclass(frozen=True)
class AlignmentCell(Summary):
    attribute: str
    model: str
    score: float
    samples: int


@dataclass(frozen=True)
class AccuracySummary(Summary):
    overall_alignment_score: float
    breakdown: tuple[AlignmentCell, ...] = ()
    attribute_averages: tuple[tuple[str, float], ...] = ()
    web_search: WebSearchSummary = field(default_factory=WebSearchSummary)
    errors: int = 0
    excluded: int = 0


def ratio(numerator: int, denominator: int) -> float:
    """numerator / denominator, or 0.0 for an empty denominator."""
    if denominator <= 0:
        return 0.0
    return numerator / denominator


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return math.fsum(values) / len(values)


def normalize_label(value: str) -> str:
    return " ".join(value.split()).lower()


def rank_by_frequency(groups: Iterable[Iterable[str]], limit: int = TOP_N) -> tuple[RankedItem, ...]:
    """Rank labels by (frequency desc, first-seen index asc), capped to ``limit``."""
    counts: dict[str, int] = {}
    first_seen: dict[str, int] = {}
    position = 0
    for group in groups:
        for raw in group:
            label = normalize_label(raw)
            if not label:
                continue
            if label not in counts:
                counts[label] = 0
                first_seen[label] = position
            counts[label] += 1
            position += 1

    ranked = sorted(counts, key=lambda label: (-counts[label], first_seen[label]))
    return tuple(RankedItem(name=label, count=counts[label]) for label in ranked[:limit])


def hostname(url: str) -> str:
    """Lower-cased hostname without a leading ``www.``; the raw value if unparsable."""
    try:
        host = urlsplit(url).hostname or url
    except ValueError:
        host = url
    host = host.strip().lower()
    return host[4:] if host.startswith("www.") else host


def _urls(response: RawResponse) -> Iterable[str]:
    for citation in response.citations or ():
        url = citation.get("url") if isinstance(citation, dict) else None
        if isinstance(url, str) and url:
            yield url
    for tool in response.tool_usage or ():
        details = tool.get("execution_details") if isinstance(tool, dict) else None
        urls = details.get("urls") if isinstance(details, dict) else None
        if isinstance(urls, list):
            yield from (u for u in urls if isinstance(u, str) and u)


def summarize_web_search(responses: Sequence[RawResponse]) -> WebSearchSummary:
    """Web-search usage and consulted hostnames in first-seen order."""
    count = sum(1 for r in responses if r.used_web_search)
    seen: dict[str, None] = {}
    for response in responses:
        for url in _urls(response):
            host = hostname(url)
            if host:
                seen.setdefault(host, None)
    return WebSearchSummary(used_any=count > 0, count=count, hostnames=tuple(seen))


def _valid(
    responses: Sequence[RawResponse],
    field_name: str,
    check: Callable[[Any], bool],
) -> tuple[list[tuple[RawResponse, Any]], int]:
    """Split responses into (response, value) pairs with a usable value and an excluded count."""
    valid: list[tuple[RawResponse, Any]] = []
    excluded = 0
    for response in responses:
        value = getattr(response, field_name)
        try:
            if response.is_malformed(field_name) or not check(value):
                raise AggregationError(field_name, value)
        except AggregationError as e:
            excluded += 1
            logger.warning(
                f"Excluding response from {field_name} aggregation: {e}",
                prompt_index=response.prompt_index,
                model=response.model,
                run_index=response.run_index,
            )
            continue
        valid.append((response, value))
    return valid, excluded


def _errors(responses: Sequence[RawResponse]) -> int:
    return sum(1 for r in responses if r.error)


def aggregate_spontaneous(responses: Sequence[RawResponse]) -> SpontaneousSummary:
    """Mention rate, top-of-mind ranking, per-model breakdown and web search usage."""
    valid, excluded = _valid(responses, "mentioned", lambda v: isinstance(v, bool))
    mentioned_count = sum(1 for _, value in valid if value)

    by_model: dict[str, list[RawResponse]] = {}
    for response, _ in valid:
        by_model.setdefault(response.model_identity.label, []).append(response)

    breakdown = [
        ModelBreakdown(
            model=label,
            mention_rate=ratio(sum(1 for r in items if r.mentioned), len(items)),
            prompts_tested=len({r.prompt_index for r in items}),
            runs=len(items),
        )
        for label, items in by_model.items()
    ]
    order = {label: i for i, label in enumerate(by_model)}
    breakdown.sort(key=lambda b: (-b.mention_rate, order[b.model]))

    return SpontaneousSummary(
        total=len(valid),
        mentioned_count=mentioned_count,
        mention_rate=ratio(mentioned_count, len(valid)),
        top_mentions=rank_by_frequency(
            r.top_of_mind for r in responses if not r.is_malformed("top_of_mind")
        ),
        model_breakdown=tuple(breakdown),
        web_search=summarize_web_search(responses),
        errors=_errors(responses),
        excluded=excluded,
    )


def majority_sentiment(labels: Iterable[str]) -> str:
    """Strict majority over positive/neutral/negative; any tie resolves to neutral."""
    counts = dict.fromkeys(SENTIMENTS, 0)
    for label in labels:
        counts[label] += 1
    if counts["positive"] > counts["neutral"] and counts["positive"] > counts["negative"]:
        return "positive"
    if counts["negative"] > counts["neutral"] and counts["negative"] > counts["positive"]:
        return "negative"
    return "neutral"


def aggregate_sentiment(responses: Sequence[RawResponse]) -> SentimentSummary:
    valid, excluded = _valid(responses, "sentiment", lambda v: v in SENTIMENTS)
    labels = [value for _, value in valid]

    # Missing accuracy counts as 0; malformed accuracy is left out of the mean
    accuracies = [
        float(r.accuracy or 0.0) for r in responses if not r.is_malformed("accuracy")
    ]

    return SentimentSummary(
        total=len(valid),
        overall_sentiment=majority_sentiment(labels),
        average_accuracy=mean(accuracies),
        distribution=tuple(
            RankedItem(name=label, count=labels.count(label)) for label in SENTIMENTS
        ),
        web_search=summarize_web_search(responses),
        errors=_errors(responses),
        excluded=excluded + (len(responses) - len(accuracies)),
    )


def aggregate_comparison(responses: Sequence[RawResponse], own_brand: str) -> ComparisonSummary:
    valid, excluded = _valid(responses, "winner", lambda v: isinstance(v, str))
    brand = normalize_label(own_brand)
    wins = sum(1 for _, value in valid if brand and normalize_label(value) == brand)

    return ComparisonSummary(
        own_brand=own_brand,
        total=len(valid),
        wins=wins,
        win_rate=ratio(wins, len(valid)),
        key_differentiators=rank_by_frequency(
            r.differentiators for r in responses if not r.is_malformed("differentiators")
        ),
        winners=rank_by_frequency([value] for _, value in valid if value),
        web_search=summarize_web_search(responses),
        errors=_errors(responses),
        excluded=excluded,
    )


def aggregate_accuracy(responses: Sequence[RawResponse]) -> AccuracySummary:
    """Mean alignment per (attribute, model) cell and the overall mean of the cells."""
    cells: dict[tuple[str, str], list[float]] = {}
    excluded = 0
    for response in responses:
        model = response.model_identity.label
        for attribute, score in response.attribute_scores.items():
            if not isinstance(score, (int, float)) or isinstance(score, bool) or not 0.0 <= score <= 1.0:
                excluded += 1
                logger.warning(
                    f"Excluding malformed alignment score: {AggregationError(attribute, score)}",
                    prompt_index=response.prompt_index,
                    model=response.model,
                )
                continue
            cells.setdefault((attribute, model), []).append(float(score))

    breakdown = tuple(
        AlignmentCell(attribute=attribute, model=model, score=mean(scores), samples=len(scores))
        for (attribute, model), scores in sorted(cells.items())
    )

    per_attribute: dict[str, list[float]] = {}
    for cell in breakdown:
        per_attribute.setdefault(cell.attribute, []).append(cell.score)

    return AccuracySummary(
        overall_alignment_score=mean([cell.score for cell in breakdown]),
        breakdown=breakdown,
        attribute_averages=tuple(
            (attribute, mean(scores)) for attribute, scores in per_attribute.items()
        ),
        web_search=summarize_web_search(responses),
        errors=_errors(responses),
        excluded=excluded,
    )
