"""Compile a story brief against a clinical rule set into a generation contract.

`resolve` is pure: it reads only its arguments and returns a fresh Contract.
Only two conditions are blocking errors (a missing age rule, and a sensitivity
level that forces safe closure paired with an ending that does not guarantee
emotional stability). A rejected override is reported as an error too, but the
rest of the contract is still the un-overridden resolution.
"""
from __future__ import annotations

import hashlib
import json
from typing import Any

from services.models import Contract, Diagnostic, Override, RuleSetVersion, StoryBrief, dedupe

MISSING_AGE_RULE = "MISSING_AGE_RULE"
UNSAFE_ENDING_FOR_SENSITIVITY = "UNSAFE_ENDING_FOR_SENSITIVITY"
OVERRIDE_REJECTED = "OVERRIDE_REJECTED"

GOAL_IGNORED = "GOAL_IGNORED"
UNKNOWN_COPING_TOOL = "UNKNOWN_COPING_TOOL"
NO_SHARED_COPING_TOOL = "NO_SHARED_COPING_TOOL"
NO_AGE_ELIGIBLE_COPING_TOOL = "NO_AGE_ELIGIBLE_COPING_TOOL"
CLOSURE_MISMATCH = "CLOSURE_MISMATCH"
MISSING_ENDING_RULE = "MISSING_ENDING_RULE"
MISSING_SENSITIVITY_RULE = "MISSING_SENSITIVITY_RULE"


def _intersect(groups: list[tuple[str, ...]]) -> list[str]:
    if not groups:
        return []
    rest = [set(g) for g in groups[1:]]
    return [t for t in groups[0] if all(t in r for r in rest)]


def resolve(brief: StoryBrief, rules: RuleSetVersion, override: Override | None = None) -> Contract:
    contract = Contract(
        brief_id=brief.id,
        rule_set_version=rules.version,
        age_group=brief.age_group,
        sensitivity=brief.sensitivity,
        key_message=brief.key_message,
    )
    errors = contract.errors
    warnings = contract.warnings

    age_rule = rules.age_rules.get(brief.age_group)
    if age_rule is None:
        errors.append(Diagnostic(MISSING_AGE_RULE, f'no age rule for age group "{brief.age_group}" in rule set {rules.version}'))
        return contract
    contract.length_budget = {
        "min_scenes": age_rule.min_scenes,
        "max_scenes": age_rule.max_scenes,
        "max_words": age_rule.max_words,
    }
    contract.style_rules = {
        "max_sentence_words": age_rule.max_sentence_words,
        "dialogue_policy": age_rule.dialogue_policy,
        "abstract_concepts_allowed": age_rule.abstract_concepts_allowed,
    }

    mappings = []
    for goal_id in brief.emotional_goals:
        mapping = rules.goal_mappings.get(goal_id)
        if mapping is None:
            warnings.append(Diagnostic(GOAL_IGNORED, f'goal "{goal_id}" has no mapping in rule set {rules.version}; goal ignored'))
            continue
        mappings.append(mapping)

    required: list[str] = [e for m in mappings for e in m.required_elements]
    must_avoid: list[str] = [p for m in mappings for p in m.avoid_patterns]
    any_goal_requires_closure = any(m.requires_closure for m in mappings)

    candidates = _intersect([m.allowed_coping_tools for m in mappings])
    if len(mappings) >= 2 and not candidates:
        warnings.append(Diagnostic(NO_SHARED_COPING_TOOL, "selected goals share no coping tool; no tool will be suggested"))
    known = []
    for tool_id in candidates:
        if tool_id not in rules.coping_tools:
            warnings.append(Diagnostic(UNKNOWN_COPING_TOOL, f'coping tool "{tool_id}" is not defined in rule set {rules.version}'))
            continue
        known.append(tool_id)
    eligible = [t for t in known if brief.age_group in rules.coping_tools[t].allowed_ages]
    if candidates and not eligible:
        warnings.append(Diagnostic(NO_AGE_ELIGIBLE_COPING_TOOL, f'no age-eligible coping tool for age group "{brief.age_group}"'))

    ending = rules.ending_rules.get(brief.ending_style)
    if ending is None:
        warnings.append(Diagnostic(MISSING_ENDING_RULE, f'no ending rule for style "{brief.ending_style}"; ending treated as not guaranteeing stability'))
        ending_stable = False
        ending_include: tuple[str, ...] = ()
        ending_avoid: tuple[str, ...] = ()
        success_moment = False
    else:
        ending_stable = ending.requires_emotional_stability
        ending_include = ending.must_include
        ending_avoid = ending.must_avoid
        success_moment = ending.requires_success_moment
    required.extend(ending_include)
    must_avoid.extend(ending_avoid)

    closure_warning = None
    if any_goal_requires_closure and not ending_stable:
        closure_warning = Diagnostic(CLOSURE_MISMATCH, f'a selected goal requires closure but ending "{brief.ending_style}" does not require emotional stability')
        warnings.append(closure_warning)

    sensitivity = rules.sensitivity_rules.get(brief.sensitivity)
    force_safe_closure = False
    if sensitivity is None:
        warnings.append(Diagnostic(MISSING_SENSITIVITY_RULE, f'no sensitivity rule for level "{brief.sensitivity}"'))
    else:
        must_avoid.extend(sensitivity.add_must_avoid)
        force_safe_closure = sensitivity.force_safe_closure
    if force_safe_closure and not ending_stable:
        if closure_warning is not None:
            warnings.remove(closure_warning)
        errors.append(Diagnostic(UNSAFE_ENDING_FOR_SENSITIVITY, f'sensitivity "{brief.sensitivity}" forces safe closure but ending "{brief.ending_style}" does not require emotional stability'))

    for exclusion in rules.exclusions.values():
        must_avoid.extend(exclusion.banned)

    tools = eligible
    if override is not None:
        tool = rules.coping_tools.get(override.coping_tool_id)
        if tool is None:
            errors.append(Diagnostic(OVERRIDE_REJECTED, f'override coping tool "{override.coping_tool_id}" does not exist in rule set {rules.version}'))
        elif brief.age_group not in tool.allowed_ages:
            errors.append(Diagnostic(OVERRIDE_REJECTED, f'override coping tool "{override.coping_tool_id}" is not allowed for age group "{brief.age_group}"'))
        else:
            contract.override_used = True
            contract.override_details = {
                "coping_tool_id": override.coping_tool_id,
                "reason": override.reason,
                "applied_at": override.applied_at,
            }
            tools = [override.coping_tool_id]

    contract.required_elements = list(dedupe(required))
    contract.must_avoid = list(dedupe(must_avoid))
    contract.allowed_coping_tools = list(tools)
    contract.coping_tool_repetitions = {t: rules.coping_tools[t].repetition_required for t in tools}
    contract.ending_contract = {
        "ending_style": brief.ending_style,
        "must_include": list(ending_include),
        "must_avoid": list(ending_avoid),
        "requires_emotional_stability": ending_stable,
        "requires_success_moment": success_moment,
        "requires_safe_closure": force_safe_closure or any_goal_requires_closure,
    }
    return contract


def override_hash(override: Override | None) -> str:
    if override is None:
        return "none"
    payload: dict[str, Any] = {"coping_tool_id": override.coping_tool_id, "reason": override.reason, "applied_at": override.applied_at}
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def contract_cache_key(brief_id: str, rule_set_version: str, override: Override | None) -> tuple[str, str, str]:
    return (brief_id, rule_set_version, override_hash(override))
