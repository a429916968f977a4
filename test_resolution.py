"""
Argument resolution: template references, sentinels, context tokens,
layered path search and the LLM extraction fallback.
"""
import asyncio
import json
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from plancore.planner_exec.actions import ExecutionContext
from plancore.planner_exec.plan_step import PlanStep
from plancore.resolution.extractor import (
    ExtractionResult,
    LLMValueExtractor,
    build_extraction_prompt,
    clean_extracted_value,
)
from plancore.resolution.path_search import evaluate_path, is_empty_result, unwrap_envelope
from plancore.resolution.resolver import ArgumentResolver, find_template_references


def _done(step_id, result, tool="search"):
    step = PlanStep(id=step_id, description=step_id, tool=tool)
    step.complete(result)
    return step


def _resolve(arguments, steps, context=None, extractor=None):
    return asyncio.run(ArgumentResolver(extractor).resolve(arguments, steps, context))


class RecordingExtractor:
    def __init__(self, answer=None):
        self.answer = answer
        self.calls = []

    async def extract(self, template, path, structure):
        self.calls.append((template, path, structure))
        if self.answer is None:
            return ExtractionResult.miss("not found")
        return ExtractionResult.found(self.answer)


# ---- template references --------------------------------------------------------

def test_find_template_references():
    refs = find_template_references({"a": "{{s1.result[0].id}} and {{s2.result}}", "b": ["{{s1.result.name}}"]})
    assert [(r.step_ref, r.path) for r in refs] == [("s1", "[0].id"), ("s2", ""), ("s1", ".name")]
    assert refs[1].is_whole_result


def test_index_then_field():
    result = _resolve({"id": "{{s1.result[0].id}}"}, [_done("s1", [{"id": "abc"}])])
    assert result.arguments == {"id": "abc"}
    assert result.missing == []
    assert result.complete


def test_empty_array_result_is_missing():
    result = _resolve({"id": "{{s1.result[0].id}}"}, [_done("s1", [])])
    assert result.missing == ["{{s1.result[0].id}}"]
    assert result.arguments == {"id": "{{s1.result[0].id}}"}


def test_unfinished_and_unknown_steps_are_missing():
    pending = PlanStep(id="s1", description="s1", tool="search")
    result = _resolve({"a": "{{s1.result}}", "b": "{{nope.result}}"}, [pending])
    assert result.missing == ["{{s1.result}}", "{{nope.result}}"]


def test_resolution_is_idempotent():
    steps = [_done("s1", {"user": {"name": "ada"}})]
    first = _resolve({"name": "{{s1.result.user.name}}", "n": 3}, steps)
    second = _resolve(first.arguments, steps)
    assert first.arguments == second.arguments == {"name": "ada", "n": 3}


def test_embedded_templates_and_non_string_values():
    steps = [_done("s1", {"count": 4, "tags": ["a", "b"]})]
    result = _resolve({"msg": "found {{s1.result.count}} items: {{s1.result.tags}}"}, steps)
    assert result.arguments["msg"] == 'found 4 items: ["a", "b"]'


def test_whole_result_is_serialized():
    result = _resolve({"data": "{{s1.result}}"}, [_done("s1", {"k": "v"})])
    assert json.loads(result.arguments["data"]) == {"k": "v"}


def test_positional_alias_and_out_of_range():
    steps = [_done("search", [{"id": 7}])]
    result = _resolve({"id": "{{step-1.result[0].id}}", "x": "{{step-5.result}}"}, steps)
    assert result.arguments == {"id": "7", "x": "{{step-5.result}}"}
    assert result.missing == []


def test_same_reference_in_two_places():
    steps = [_done("s1", {"id": "z"})]
    result = _resolve({"a": "{{s1.result.id}}-{{s1.result.id}}"}, steps)
    assert result.arguments == {"a": "z-z"}


# ---- sentinels and context ----------------------------------------------------------

def test_sentinels_are_reported_by_name():
    result = _resolve(
        {"repo": "NOT_FOUND", "owner": "MISSING:owner_login", "team": "NEEDS-INPUT:team", "crm": "NO-DISCOVERY-PATH"},
        [],
    )
    assert result.missing == ["repo", "owner_login", "team", "crm"]
    assert result.arguments["repo"] == "NOT_FOUND"


def test_nested_sentinel_uses_key_path():
    result = _resolve({"filter": {"labels": ["NULL"]}}, [])
    assert result.missing == ["filter.labels[0]"]


def test_needs_input_sentinel_uses_supplied_value():
    context = ExecutionContext(input="g", user_context={"team": "platform"})
    result = _resolve({"team": "NEEDS-INPUT:team", "owner": "NEEDS-INPUT:owner"}, [], context)
    assert result.arguments == {"team": "platform", "owner": "NEEDS-INPUT:owner"}
    assert result.missing == ["owner"]


def test_context_tokens():
    context = ExecutionContext(
        input="g",
        user_context={"repo": {"name": "acme/app"}, "ids": [4, 5]},
        agent_identity={"name": "helper"},
    )
    result = _resolve(
        {
            "repo": "CONTEXT.userContext.repo.name",
            "second": "CONTEXT.userContext.ids[1]",
            "agent": "CONTEXT.agentIdentity.name",
            "absent": "CONTEXT.userContext.token",
        },
        [],
        context,
    )
    assert result.arguments["repo"] == "acme/app"
    assert result.arguments["second"] == 5
    assert result.arguments["agent"] == "helper"
    assert result.missing == ["CONTEXT.userContext.token"]


# ---- path search strategies -----------------------------------------------------------

def test_direct_path_under_nested_object():
    match = evaluate_path({"data": {"items": [{"id": 1}, {"id": 2}]}}, ".items[1].id")
    assert match.value == 2
    assert match.strategy == "direct"


def test_smart_field_search():
    match = evaluate_path({"payload": {"meta": {"owner": "ada"}}}, ".info.owner")
    assert match.value == "ada"
    assert match.strategy == "smart-field"


def test_smart_field_applies_preceding_index():
    match = evaluate_path({"response": {"names": ["x", "y"]}}, ".list[1].names")
    assert match.value == "y"


def test_pattern_discovery_for_single_field():
    value = {"page": 1, "repos": [{"name": "r"}, {"name": "s"}]}
    match = evaluate_path(value, ".name")
    assert match.value == "r"
    assert match.strategy == "pattern"


def test_id_fallbacks():
    match = evaluate_path({"rows": [{"uuid": "u-1"}]}, ".first.key")
    assert match.value == "u-1"
    assert match.strategy == "array-id"

    match = evaluate_path({"a": {"b": {"id": 9}}}, ".nothing")
    assert match.value == 9
    assert match.strategy == "recursive-id"


def test_nothing_matches():
    assert evaluate_path({"a": 1}, ".b.c") is None


def test_envelope_and_structured_strings():
    envelope = {"result": {"content": [{"type": "text", "text": '[{"id": "e1"}]'}]}}
    assert unwrap_envelope(envelope) == [{"id": "e1"}]
    assert evaluate_path(envelope, "[0].id").value == "e1"

    relaxed = {"body": "{'items': [{'id': 3, 'open': True}]}"}
    assert evaluate_path(relaxed, ".items[0].open").value is True


def test_null_hit_is_a_value():
    match = evaluate_path({"owner": None, "name": "x"}, ".owner")
    assert match is not None
    assert match.value is None


def test_is_empty_result():
    assert is_empty_result([]) and is_empty_result({}) and is_empty_result("  ")
    assert not is_empty_result(0)
    assert not is_empty_result([0])


# ---- extraction fallback ------------------------------------------------------------

def test_extractor_fallback_fills_gap():
    extractor = RecordingExtractor(answer="ISSUE-12")
    steps = [_done("s1", "plain text mentioning ISSUE-12 somewhere")]
    result = _resolve({"key": "{{s1.result.issue_key}}"}, steps, extractor=extractor)
    assert result.arguments == {"key": "ISSUE-12"}
    assert extractor.calls[0][0] == "{{s1.result.issue_key}}"
    assert extractor.calls[0][1] == ".issue_key"


def test_extractor_miss_reports_missing():
    extractor = RecordingExtractor(answer=None)
    result = _resolve({"key": "{{s1.result.issue_key}}"}, [_done("s1", "no structure")], extractor=extractor)
    assert result.missing == ["{{s1.result.issue_key}}"]


class FakeCallLLM:
    def __init__(self, reply):
        self.reply = reply
        self.calls = 0

    def call(self, messages):
        self.calls += 1
        return self.reply


def test_llm_extractor_cleans_and_caches():
    llm = FakeCallLLM('```\n"abc-1"\n```')
    extractor = LLMValueExtractor(llm, timeout=5.0, cache_size=4)

    async def _twice():
        first = await extractor.extract("{{s1.result.x}}", ".x", {"y": "abc-1"})
        second = await extractor.extract("{{s1.result.x}}", ".x", {"y": "abc-1"})
        return first, second

    first, second = asyncio.run(_twice())
    assert first.ok and first.value == "abc-1"
    assert second == first
    assert llm.calls == 1


def test_llm_extractor_timeout_is_a_miss():
    class SlowLLM:
        async def call(self, messages):
            await asyncio.sleep(1)
            return "late"

    extractor = LLMValueExtractor(SlowLLM(), timeout=0.01)
    result = asyncio.run(extractor.extract("{{s1.result.x}}", ".x", {}))
    assert not result.ok


def test_clean_extracted_value():
    assert clean_extracted_value("NOT_FOUND") is None
    assert clean_extracted_value("  ") is None
    assert clean_extracted_value('{"id": "x-9"}') == "x-9"
    assert clean_extracted_value("'quoted'") == "quoted"


def test_extraction_prompt_is_bounded():
    prompt = build_extraction_prompt("{{s1.result.x}}", ".x", {"blob": "z" * 10000})
    assert "(truncated)" in prompt
    assert len(prompt) < 6000
