"""Typed views over the clinical rule tables, briefs and generation contracts.

Documents are stored as plain dicts; these dataclasses are what the resolver
works on. Set-valued rule fields are kept as ordered tuples so that a contract
built from them serialises the same way every time.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

from services.errors import BriefInvalid, RuleSetInvalid

AGE_GROUPS = ("0_3", "3_6", "6_9", "9_12")
SENSITIVITY_LEVELS = ("low", "medium", "high")
ENDING_STYLES = ("calm_resolution", "open_ended", "empowering")
DIALOGUE_POLICIES = ("none", "minimal", "allowed")

MAX_REVISIONS = 3
MAX_GOALS = 3
MAX_KEY_MESSAGE_CHARS = 200


def dedupe(items: Any) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return tuple(out)


def _tags(value: Any, where: str, problems: list[str]) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        problems.append(f"{where}: expected a list of strings")
        return ()
    return dedupe(v.strip() for v in value if v.strip())


def _req(entry: dict[str, Any], key: str, where: str, problems: list[str], kind: type | tuple[type, ...]) -> Any:
    if key not in entry:
        problems.append(f"{where}.{key}: missing")
        return None
    value = entry[key]
    # bool is an int subclass; keep integer fields strict
    if kind is int and isinstance(value, bool):
        problems.append(f"{where}.{key}: expected int")
        return None
    if not isinstance(value, kind):
        problems.append(f"{where}.{key}: expected {getattr(kind, '__name__', kind)}")
        return None
    return value


@dataclass(frozen=True)
class AgeRule:
    max_words: int
    min_scenes: int
    max_scenes: int
    max_sentence_words: int
    dialogue_policy: str
    abstract_concepts_allowed: bool


@dataclass(frozen=True)
class GoalMapping:
    required_elements: tuple[str, ...]
    allowed_coping_tools: tuple[str, ...]
    avoid_patterns: tuple[str, ...]
    requires_closure: bool


@dataclass(frozen=True)
class CopingTool:
    allowed_ages: tuple[str, ...]
    repetition_required: int


@dataclass(frozen=True)
class EndingRule:
    must_include: tuple[str, ...]
    must_avoid: tuple[str, ...]
    requires_emotional_stability: bool
    requires_success_moment: bool


@dataclass(frozen=True)
class SensitivityRule:
    add_must_avoid: tuple[str, ...]
    force_safe_closure: bool


@dataclass(frozen=True)
class Exclusion:
    banned: tuple[str, ...]


@dataclass(frozen=True)
class RuleSetVersion:
    version: str
    status: str
    created_at: str
    age_rules: dict[str, AgeRule]
    goal_mappings: dict[str, GoalMapping]
    coping_tools: dict[str, CopingTool]
    ending_rules: dict[str, EndingRule]
    sensitivity_rules: dict[str, SensitivityRule]
    exclusions: dict[str, Exclusion]
    notes: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any], status: str = "active") -> "RuleSetVersion":
        problems: list[str] = []
        version = str(data.get("version") or "").strip()
        if not version:
            problems.append("version: missing")

        def table(name: str) -> dict[str, dict[str, Any]]:
            raw = data.get(name)
            if raw is None:
                return {}
            if not isinstance(raw, dict) or not all(isinstance(v, dict) for v in raw.values()):
                problems.append(f"{name}: expected a mapping of mappings")
                return {}
            return {str(k): v for k, v in raw.items()}

        age_rules: dict[str, AgeRule] = {}
        for key, e in table("age_rules").items():
            where = f"age_rules.{key}"
            if key not in AGE_GROUPS:
                problems.append(f"{where}: unknown age group")
            vals = {k: _req(e, k, where, problems, int) for k in ("max_words", "min_scenes", "max_scenes", "max_sentence_words")}
            policy = e.get("dialogue_policy", "allowed")
            if policy not in DIALOGUE_POLICIES:
                problems.append(f"{where}.dialogue_policy: must be one of {', '.join(DIALOGUE_POLICIES)}")
            if None in vals.values():
                continue
            if vals["min_scenes"] > vals["max_scenes"]:
                problems.append(f"{where}: min_scenes greater than max_scenes")
            age_rules[key] = AgeRule(dialogue_policy=policy, abstract_concepts_allowed=bool(e.get("abstract_concepts_allowed", False)), **vals)

        goal_mappings = {
            key: GoalMapping(
                required_elements=_tags(e.get("required_elements"), f"goal_mappings.{key}.required_elements", problems),
                allowed_coping_tools=_tags(e.get("allowed_coping_tools"), f"goal_mappings.{key}.allowed_coping_tools", problems),
                avoid_patterns=_tags(e.get("avoid_patterns"), f"goal_mappings.{key}.avoid_patterns", problems),
                requires_closure=bool(e.get("requires_closure", False)),
            )
            for key, e in table("goal_mappings").items()
        }

        coping_tools: dict[str, CopingTool] = {}
        for key, e in table("coping_tools").items():
            where = f"coping_tools.{key}"
            ages = _tags(e.get("allowed_ages"), f"{where}.allowed_ages", problems)
            unknown = [a for a in ages if a not in AGE_GROUPS]
            if unknown:
                problems.append(f"{where}.allowed_ages: unknown age groups {unknown}")
            reps = _req(e, "repetition_required", where, problems, int)
            if reps is not None and reps < 1:
                problems.append(f"{where}.repetition_required: must be >= 1")
            coping_tools[key] = CopingTool(allowed_ages=ages, repetition_required=reps or 1)

        ending_rules = {
            key: EndingRule(
                must_include=_tags(e.get("must_include"), f"ending_rules.{key}.must_include", problems),
                must_avoid=_tags(e.get("must_avoid"), f"ending_rules.{key}.must_avoid", problems),
                requires_emotional_stability=bool(e.get("requires_emotional_stability", False)),
                requires_success_moment=bool(e.get("requires_success_moment", False)),
            )
            for key, e in table("ending_rules").items()
        }

        sensitivity_rules: dict[str, SensitivityRule] = {}
        for key, e in table("sensitivity_rules").items():
            if key not in SENSITIVITY_LEVELS:
                problems.append(f"sensitivity_rules.{key}: unknown sensitivity level")
            sensitivity_rules[key] = SensitivityRule(
                add_must_avoid=_tags(e.get("add_must_avoid"), f"sensitivity_rules.{key}.add_must_avoid", problems),
                force_safe_closure=bool(e.get("force_safe_closure", False)),
            )

        exclusions = {
            key: Exclusion(banned=_tags(e.get("banned"), f"exclusions.{key}.banned", problems))
            for key, e in table("exclusions").items()
        }

        if problems:
            raise RuleSetInvalid(f"rule set {version or '?'} is invalid", problems=problems)
        return cls(
            version=version,
            status=status,
            created_at=str(data.get("created_at", "")),
            notes=str(data.get("notes", "")),
            age_rules=age_rules,
            goal_mappings=goal_mappings,
            coping_tools=coping_tools,
            ending_rules=ending_rules,
            sensitivity_rules=sensitivity_rules,
            exclusions=exclusions,
        )

    def to_dict(self) -> dict[str, Any]:
        def plain(obj: Any) -> Any:
            if isinstance(obj, tuple):
                return list(obj)
            if isinstance(obj, dict):
                return {k: plain(v) for k, v in obj.items()}
            return obj

        return plain(asdict(self))


@dataclass(frozen=True)
class StoryBrief:
    id: str
    topic: str
    situation: str
    age_group: str
    emotional_goals: tuple[str, ...]
    sensitivity: str
    ending_style: str
    created_by: str
    created_at: str = ""
    key_message: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoryBrief":
        errors: list[dict[str, str]] = []

        def text(key: str, required: bool = True) -> str:
            value = data.get(key)
            value = value.strip() if isinstance(value, str) else ""
            if required and not value:
                errors.append({"code": "REQUIRED_FIELD_MISSING", "field": key, "message": f"{key} is required"})
            return value

        def choice(key: str, allowed: tuple[str, ...], code: str) -> str:
            value = text(key)
            if value and value not in allowed:
                errors.append({"code": code, "field": key, "message": f"{key} must be one of {', '.join(allowed)}"})
            return value

        topic = text("topic").lower()
        situation = text("situation").lower()
        created_by = text("created_by")
        age_group = choice("age_group", AGE_GROUPS, "INVALID_AGE_GROUP")
        sensitivity = choice("sensitivity", SENSITIVITY_LEVELS, "INVALID_SENSITIVITY")
        ending_style = choice("ending_style", ENDING_STYLES, "INVALID_ENDING_STYLE")

        raw_goals = data.get("emotional_goals") or []
        if not isinstance(raw_goals, (list, tuple)):
            raw_goals = []
        goals = dedupe(g.strip().lower() for g in raw_goals if isinstance(g, str) and g.strip())
        if not goals:
            errors.append({"code": "REQUIRED_FIELD_MISSING", "field": "emotional_goals", "message": "at least one emotional goal is required"})
        elif len(goals) > MAX_GOALS:
            errors.append({"code": "INVALID_GOALS_COUNT", "field": "emotional_goals", "message": f"at most {MAX_GOALS} emotional goals are allowed"})

        key_message = data.get("key_message")
        if key_message is not None and not isinstance(key_message, str):
            errors.append({"code": "KEY_MESSAGE_INVALID_TYPE", "field": "key_message", "message": "key_message must be a string"})
            key_message = None
        elif isinstance(key_message, str):
            key_message = key_message.strip() or None
            if key_message and len(key_message) > MAX_KEY_MESSAGE_CHARS:
                errors.append({"code": "KEY_MESSAGE_TOO_LONG", "field": "key_message", "message": f"key_message must be at most {MAX_KEY_MESSAGE_CHARS} characters"})

        if errors:
            raise BriefInvalid("story brief is invalid", errors=errors)
        return cls(
            id=str(data.get("id", "")),
            topic=topic,
            situation=situation,
            age_group=age_group,
            emotional_goals=goals,
            sensitivity=sensitivity,
            ending_style=ending_style,
            created_by=created_by,
            created_at=str(data.get("created_at", "")),
            key_message=key_message,
        )

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["emotional_goals"] = list(self.emotional_goals)
        return out


@dataclass(frozen=True)
class Override:
    coping_tool_id: str
    reason: str | None = None
    applied_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Override | None":
        if not data or not data.get("coping_tool_id"):
            return None
        return cls(coping_tool_id=str(data["coping_tool_id"]), reason=data.get("reason"), applied_at=data.get("applied_at"))


@dataclass(frozen=True)
class Diagnostic:
    code: str
    message: str


@dataclass
class Contract:
    brief_id: str
    rule_set_version: str
    age_group: str
    sensitivity: str
    length_budget: dict[str, int] = field(default_factory=dict)
    style_rules: dict[str, Any] = field(default_factory=dict)
    required_elements: list[str] = field(default_factory=list)
    allowed_coping_tools: list[str] = field(default_factory=list)
    coping_tool_repetitions: dict[str, int] = field(default_factory=dict)
    must_avoid: list[str] = field(default_factory=list)
    ending_contract: dict[str, Any] = field(default_factory=dict)
    key_message: str | None = None
    override_used: bool = False
    override_details: dict[str, Any] | None = None
    errors: list[Diagnostic] = field(default_factory=list)
    warnings: list[Diagnostic] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "invalid" if self.errors else "valid"

    def error_codes(self) -> list[str]:
        return [e.code for e in self.errors]

    def warning_codes(self) -> list[str]:
        return [w.code for w in self.warnings]

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["status"] = self.status
        return out


def contract_to_json(contract: Contract) -> str:
    return json.dumps(contract.to_dict(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
