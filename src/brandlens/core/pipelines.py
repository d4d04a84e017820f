"""
Pipeline variants: one class per pipeline type.

A variant knows how to phrase a prompt for a provider, how to read the
structured fields back out of the reply, which neutral values stand in when a
call fails, and which aggregation turns its responses into a summary. The
runner and dispatcher are generic and only talk to this interface.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from .aggregation import (
    SENTIMENTS,
    Summary,
    aggregate_accuracy,
    aggregate_comparison,
    aggregate_sentiment,
    aggregate_spontaneous,
    normalize_label,
)
from .models import PipelineType, ProjectContext, RawResponse

_FENCE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)

JSON_INSTRUCTION = (
    "Answer the user's question naturally. Then, on the last lines of your reply, "
    "add a fenced ```json block containing exactly this object: {schema}"
)


@dataclass(frozen=True)
class PromptShape:
    """System and user messages for one provider call."""

    system_prompt: str
    user_prompt: str


@dataclass
class Extraction:
    """Fields read from a provider reply and the names of those that were unusable."""

    fields: dict[str, Any] = field(default_factory=dict)
    malformed: list[str] = field(default_factory=list)


def render_prompt(template: str, project: ProjectContext) -> str:
    """Substitute brand placeholders in a prompt template."""
    competitors = ", ".join(project.competitors)
    first_competitor = project.competitors[0] if project.competitors else "its main competitor"
    return (
        template.replace("{COMPANY}", project.brand_name)
        .replace("{BRAND}", project.brand_name)
        .replace("{COMPETITORS}", competitors)
        .replace("{COMPETITOR}", first_competitor)
    )


def extract_json(text: str) -> dict[str, Any] | None:
    """Find the JSON object in a reply: the whole text, a fenced block, or the outermost braces."""
    candidates = [text.strip()]
    candidates.extend(reversed(_FENCE.findall(text)))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _string_list(value: Any) -> list[str] | None:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        return None
    return [v.strip() for v in value if v.strip()]


def _unit_score(value: Any) -> float | None:
    """A number in [0, 1]; percentages and 0-10 scales are not guessed at."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not 0.0 <= value <= 1.0:
        return None
    return float(value)


class PipelineVariant(ABC):
    """Behavior that differs between pipeline types."""

    pipeline_type: ClassVar[PipelineType]
    # Whether analyzer runs_per_model applies to this type
    repeats: ClassVar[bool] = False
    schema: ClassVar[str]
    role: ClassVar[str]

    def prompt_shape(self, prompt: str, project: ProjectContext) -> PromptShape:
        system = f"{self.role} {JSON_INSTRUCTION.format(schema=self.schema)}"
        user = render_prompt(prompt, project)
        if project.website_url:
            user += f"\n\n<context>{project.brand_name}'s URL: {project.website_url}</context>"
        return PromptShape(system_prompt=system, user_prompt=user)

    @abstractmethod
    def parse(self, text: str, project: ProjectContext) -> Extraction:
        """Read this type's fields from a provider reply."""

    @abstractmethod
    def neutral_fields(self, project: ProjectContext) -> dict[str, Any]:
        """Field values recorded when both primary and fallback failed."""

    @abstractmethod
    def aggregate(self, responses: list[RawResponse], project: ProjectContext) -> Summary:
        """Summary over responses already sorted by identity."""


def mentions(brand: str, text: str) -> bool:
    """Whole-word match; "acme" is not found in "acmeville"."""
    return re.search(rf"(?<!\w){re.escape(brand)}(?!\w)", text) is not None


class SpontaneousPipeline(PipelineVariant):
    pipeline_type = PipelineType.SPONTANEOUS
    repeats = True
    schema = '{"top_of_mind": [<brand or company names you mentioned, in order>]}'
    role = "You are a helpful assistant answering a consumer's question."

    def prompt_shape(self, prompt: str, project: ProjectContext) -> PromptShape:
        # The brand must not be revealed, so no website context is attached
        system = f"{self.role} {JSON_INSTRUCTION.format(schema=self.schema)}"
        return PromptShape(system_prompt=system, user_prompt=render_prompt(prompt, project))

    def parse(self, text: str, project: ProjectContext) -> Extraction:
        extraction = Extraction()
        data = extract_json(text) or {}
        top_of_mind = _string_list(data.get("top_of_mind"))
        if top_of_mind is None:
            extraction.malformed.append("top_of_mind")
            top_of_mind = []
        extraction.fields["top_of_mind"] = top_of_mind

        brand = normalize_label(project.brand_name)
        extraction.fields["mentioned"] = bool(brand) and (
            mentions(brand, normalize_label(text))
            or brand in (normalize_label(b) for b in top_of_mind)
        )
        return extraction

    def neutral_fields(self, project: ProjectContext) -> dict[str, Any]:
        return {"mentioned": False, "top_of_mind": []}

    def aggregate(self, responses: list[RawResponse], project: ProjectContext) -> Summary:
        return aggregate_spontaneous(responses)


class SentimentPipeline(PipelineVariant):
    pipeline_type = PipelineType.SENTIMENT
    schema = (
        '{"sentiment": "positive" | "neutral" | "negative", '
        '"accuracy": <number between 0 and 1, how factually accurate your description is>}'
    )
    role = "You are a market analyst describing how a brand is perceived."

    def parse(self, text: str, project: ProjectContext) -> Extraction:
        extraction = Extraction()
        data = extract_json(text) or {}

        sentiment = data.get("sentiment")
        if isinstance(sentiment, str) and sentiment.strip().lower() in SENTIMENTS:
            extraction.fields["sentiment"] = sentiment.strip().lower()
        else:
            extraction.malformed.append("sentiment")
            extraction.fields["sentiment"] = None

        if data.get("accuracy") is None:
            # Missing accuracy counts as 0
            extraction.fields["accuracy"] = 0.0
        else:
            accuracy = _unit_score(data["accuracy"])
            if accuracy is None:
                extraction.malformed.append("accuracy")
            extraction.fields["accuracy"] = accuracy
        return extraction

    def neutral_fields(self, project: ProjectContext) -> dict[str, Any]:
        return {"sentiment": "neutral", "accuracy": 0.0}

    def aggregate(self, responses: list[RawResponse], project: ProjectContext) -> Summary:
        return aggregate_sentiment(responses)


class ComparisonPipeline(PipelineVariant):
    pipeline_type = PipelineType.COMPARISON
    schema = (
        '{"winner": <name of the brand that comes out ahead>, '
        '"differentiators": [<short phrases naming what sets the winner apart>]}'
    )
    role = "You are an impartial analyst comparing brands head to head."

    def parse(self, text: str, project: ProjectContext) -> Extraction:
        extraction = Extraction()
        data = extract_json(text) or {}

        winner = data.get("winner")
        if isinstance(winner, str):
            extraction.fields["winner"] = winner.strip()
        else:
            extraction.malformed.append("winner")
            extraction.fields["winner"] = None

        differentiators = _string_list(data.get("differentiators"))
        if differentiators is None:
            extraction.malformed.append("differentiators")
            differentiators = []
        extraction.fields["differentiators"] = differentiators
        return extraction

    def neutral_fields(self, project: ProjectContext) -> dict[str, Any]:
        return {"winner": "", "differentiators": []}

    def aggregate(self, responses: list[RawResponse], project: ProjectContext) -> Summary:
        return aggregate_comparison(responses, project.brand_name)


class AccuracyPipeline(PipelineVariant):
    pipeline_type = PipelineType.ACCURACY
    schema = (
        '{"attribute_scores": {<attribute>: <number between 0 and 1, how strongly '
        "the brand is associated with it>}}"
    )
    role = "You are a brand analyst rating how a brand is associated with given attributes."

    def prompt_shape(self, prompt: str, project: ProjectContext) -> PromptShape:
        shape = super().prompt_shape(prompt, project)
        if not project.key_attributes:
            return shape
        attributes = ", ".join(project.key_attributes)
        return PromptShape(
            system_prompt=f"{shape.system_prompt} Score exactly these attributes: {attributes}.",
            user_prompt=shape.user_prompt,
        )

    def parse(self, text: str, project: ProjectContext) -> Extraction:
        extraction = Extraction()
        data = extract_json(text) or {}
        raw_scores = data.get("attribute_scores")
        if not isinstance(raw_scores, dict):
            extraction.malformed.append("attribute_scores")
            raw_scores = {}

        # Known attributes are always present; anything unscored is None and gets excluded
        attributes = list(project.key_attributes) or list(raw_scores)
        lookup = {normalize_label(str(k)): v for k, v in raw_scores.items()}
        extraction.fields["attribute_scores"] = {
            attribute: _unit_score(lookup.get(normalize_label(attribute)))
            for attribute in attributes
        }
        return extraction

    def neutral_fields(self, project: ProjectContext) -> dict[str, Any]:
        return {"attribute_scores": {attribute: 0.0 for attribute in project.key_attributes}}

    def aggregate(self, responses: list[RawResponse], project: ProjectContext) -> Summary:
        return aggregate_accuracy(responses)


VARIANTS: dict[PipelineType, PipelineVariant] = {
    variant.pipeline_type: variant
    for variant in (
        SpontaneousPipeline(),
        SentimentPipeline(),
        ComparisonPipeline(),
        AccuracyPipeline(),
    )
}


def get_variant(pipeline_type: PipelineType) -> PipelineVariant:
    return VARIANTS[PipelineType(pipeline_type)]
