from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from urllib.parse import quote

from app.config import STEP_KEYS

FULL_PIPELINE_PATH = "/v1/pipeline/full"
FULL_PIPELINE_LABEL = "Полный пайплайн"


@dataclass(frozen=True)
class StepAttempt:
    """Один способ вызвать шаг: метод + шаблон пути (`{inn}` подставляется экранированным)."""

    path_template: str
    label: str
    method: str = "GET"
    has_body: bool = False

    def path(self, inn: str) -> str:
        return self.path_template.format(inn=quote(inn, safe=""))

    def body(self, inn: str) -> Optional[dict[str, Any]]:
        return {"inn": inn} if self.has_body else None

    def describe(self, inn: str) -> dict[str, Any]:
        return {"method": self.method, "path": self.path(inn), "body": self.body(inn)}


@dataclass(frozen=True)
class StepDefinition:
    primary: StepAttempt
    fallbacks: tuple[StepAttempt, ...] = field(default_factory=tuple)

    @property
    def label(self) -> str:
        return self.primary.label

    def attempts(self) -> tuple[StepAttempt, ...]:
        return (self.primary, *self.fallbacks)


STEP_DEFINITIONS: dict[str, StepDefinition] = {
    "lookup": StepDefinition(
        primary=StepAttempt("/v1/lookup/{inn}/card", "Карта компании (lookup)"),
        fallbacks=(StepAttempt("/v1/lookup/card", "POST lookup/card", "POST", True),),
    ),
    "parse_site": StepDefinition(
        primary=StepAttempt("/v1/parse-site", "Парсинг сайта", "POST", True),
        fallbacks=(StepAttempt("/v1/parse-site/{inn}", "GET parse-site"),),
    ),
    "analyze_json": StepDefinition(
        primary=StepAttempt("/v1/analyze-json/{inn}", "AI-анализ"),
        fallbacks=(StepAttempt("/v1/analyze-json", "POST analyze-json", "POST", True),),
    ),
    "ib_match": StepDefinition(
        primary=StepAttempt("/v1/ib-match/by-inn?inn={inn}", "Сопоставление продклассов"),
        fallbacks=(
            StepAttempt("/v1/ib-match", "POST ib-match", "POST", True),
            StepAttempt("/v1/ib-match/by-inn", "POST ib-match/by-inn", "POST", True),
        ),
    ),
    "equipment_selection": StepDefinition(
        primary=StepAttempt("/v1/equipment-selection/by-inn/{inn}", "Подбор оборудования"),
    ),
}

DEFAULT_STEPS: tuple[str, ...] = STEP_KEYS


def _step_key(value: Any) -> str:
    return "_".join(str(value or "").strip().lower().replace("-", " ").split())


def normalize_steps(raw: Any) -> list[str]:
    """Известные шаги в порядке запроса, без повторов; пусто -> все шаги по умолчанию."""
    if not isinstance(raw, (list, tuple)):
        return list(DEFAULT_STEPS)
    ordered: list[str] = []
    for item in raw:
        key = _step_key(item)
        if key in STEP_DEFINITIONS and key not in ordered:
            ordered.append(key)
    return ordered or list(DEFAULT_STEPS)


def known_steps(raw: Iterable[Any]) -> list[str]:
    """Как normalize_steps, но без подстановки значения по умолчанию."""
    ordered: list[str] = []
    for item in raw or ():
        key = _step_key(item)
        if key in STEP_DEFINITIONS and key not in ordered:
            ordered.append(key)
    return ordered


def build_plan(mode: str, steps: Optional[list[str]], sample_inn: str) -> list[dict[str, Any]]:
    """План запросов для подтверждения постановки в очередь."""
    if mode == "full":
        return [
            {
                "label": FULL_PIPELINE_LABEL,
                "request": {"method": "POST", "path": FULL_PIPELINE_PATH, "body": {"inn": sample_inn}},
                "fallbacks": [],
            }
        ]
    plan: list[dict[str, Any]] = []
    for step in steps or []:
        definition = STEP_DEFINITIONS[step]
        plan.append(
            {
                "step": step,
                "label": definition.label,
                "request": definition.primary.describe(sample_inn),
                "fallbacks": [fb.describe(sample_inn) for fb in definition.fallbacks],
            }
        )
    return plan
