try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import json
import random

import pytest

from takeoff.services.json_repair import (
    QUALITY_KEYS,
    extract_analysis_payload,
    fallback_quality_analysis,
    normalize_quality_analysis,
)


def _item(name: str, page: int = 1) -> dict:
    return {
        "name": name,
        "quantity": 10,
        "unit": "LF",
        "bounding_box": {"x": 0.1, "y": 0.2, "page": page, "width": 0.3, "height": 0.1},
    }


QUALITY = {
    "completeness": {"missing_disciplines": ["electrical"], "missing_sheets": [4], "notes": "ok"},
    "consistency": {"conflicts": [], "unit_mismatches": [], "scale_issues": []},
    "risk_flags": [{"severity": "warning", "category": "code", "description": "Egress width"}],
    "audit_trail": {"chunks_covered": "1", "pages_covered": "1-2", "method": "visual"},
}


def test_clean_json_parses_without_repair() -> None:
    payload = {"items": [_item("Stud wall"), _item("Door")], "quality_analysis": QUALITY}

    result = extract_analysis_payload(json.dumps(payload))

    assert result.repaired is False
    assert result.notes is None
    assert result.items == payload["items"]
    assert result.quality_analysis == QUALITY


def test_prose_and_fence_with_trailing_comma() -> None:
    raw = 'Here is the result:\n```json\n{"items": [{"a":1},{"b":2},]}\n```'

    result = extract_analysis_payload(raw)

    assert result.items == [{"a": 1}, {"b": 2}]
    assert result.repaired is True
    assert set(QUALITY_KEYS) <= set(result.quality_analysis)
    assert "quality_analysis missing" in result.notes


def test_output_round_trips_through_serialization() -> None:
    raw = "{'items': [{'name': 'Door'}], 'quality_analysis': {}}"

    first = extract_analysis_payload(raw)
    second = extract_analysis_payload(json.dumps(first.payload()))

    assert second.repaired is False
    assert second.items == first.items
    assert second.quality_analysis == first.quality_analysis


def test_fenced_clean_json_is_not_marked_repaired() -> None:
    raw = "```json\n" + json.dumps({"items": [_item("Slab")], "quality_analysis": QUALITY}) + "\n```"

    result = extract_analysis_payload(raw)

    assert result.repaired is False
    assert [item["name"] for item in result.items] == ["Slab"]


def test_zero_width_characters_and_bom_are_stripped() -> None:
    noise = chr(0xFEFF) + chr(0x200B)
    raw = noise + json.dumps({"items": [_item("Beam")], "quality_analysis": QUALITY}) + chr(0x2060)

    result = extract_analysis_payload(raw)

    assert result.repaired is False
    assert result.items[0]["name"] == "Beam"


def test_truncated_output_keeps_complete_items() -> None:
    complete = [_item(f"Item {index}") for index in range(3)]
    full = json.dumps({"items": complete + [_item("Cut off")], "quality_analysis": QUALITY})
    cut_at = full.index('"Cut off"') + 5
    raw = full[:cut_at]

    result = extract_analysis_payload(raw)

    assert result.repaired is True
    names = [item.get("name") for item in result.items]
    assert names[:3] == ["Item 0", "Item 1", "Item 2"]
    assert len(result.items) >= 3
    assert set(QUALITY_KEYS) <= set(result.quality_analysis)


def test_truncated_after_key_drops_dangling_key() -> None:
    raw = '{"items": [{"name": "A"}, {"name": "B", "unit":'

    result = extract_analysis_payload(raw)

    assert result.items[0] == {"name": "A"}
    assert result.items[1] == {"name": "B"}
    assert "bracket balance" in result.notes


def test_single_quotes_are_normalized() -> None:
    raw = "{'items': [{'name': 'Door', 'unit': 'EA'}], 'quality_analysis': {}}"

    result = extract_analysis_payload(raw)

    assert result.items == [{"name": "Door", "unit": "EA"}]
    assert "single quotes" in result.notes
    assert list(result.quality_analysis) == list(QUALITY_KEYS)


def test_apostrophes_inside_strings_are_left_alone() -> None:
    raw = '{"items": [{"name": "Owner\'s closet", "unit": "EA"},]}'

    result = extract_analysis_payload(raw)

    assert result.items == [{"name": "Owner's closet", "unit": "EA"}]


def test_missing_commas_between_objects_are_inserted() -> None:
    raw = '{"items": [{"name": "A"} {"name": "B"}] "quality_analysis": {}}'

    result = extract_analysis_payload(raw)

    assert [item["name"] for item in result.items] == ["A", "B"]
    assert result.repaired is True


def test_unparseable_item_is_dropped_during_partial_extraction() -> None:
    raw = (
        '{"items": [{"name": "A"}, {"name": B-unquoted}, {"name": "C"}], '
        '"quality_analysis": ' + json.dumps(QUALITY) + "}"
    )

    result = extract_analysis_payload(raw)

    assert [item["name"] for item in result.items] == ["A", "C"]
    assert "Used partial extraction" in result.notes
    assert result.quality_analysis["risk_flags"] == QUALITY["risk_flags"]


def test_nested_items_key_does_not_shadow_top_level_array() -> None:
    raw = (
        '{"quality_analysis": {"completeness": {"items": [{"name": "nested"}]}}, '
        '"items": [{"name": "top", "size": oops}, {"name": "kept"}]}'
    )

    result = extract_analysis_payload(raw)

    assert [item["name"] for item in result.items] == ["kept"]


def test_quality_analysis_assembled_from_sections() -> None:
    raw = (
        '{"items": [{"name": "A"}], "quality_analysis": {"completeness": '
        '{"missing_disciplines": [], "missing_sheets": [], "notes": "n"}, '
        '"risk_flags": [{"severity": "critical", "description": "x"}, {"severity": bad}], '
        '"audit_trail": {"method": "m"} "consistency": oops}}'
    )

    result = extract_analysis_payload(raw)

    qa = result.quality_analysis
    assert qa["completeness"]["notes"] == "n"
    assert qa["risk_flags"] == [{"severity": "critical", "description": "x"}]
    assert qa["audit_trail"] == {"method": "m"}
    assert qa["consistency"] == {"conflicts": [], "unit_mismatches": [], "scale_issues": []}


@pytest.mark.parametrize("raw", ["", "   ", "no json here", "[1, 2, 3]", "{{{{", "}}]]", None, 42])
def test_garbage_never_raises_and_returns_fallback(raw) -> None:
    result = extract_analysis_payload(raw)

    assert result.items == []
    assert result.repaired is True
    assert result.quality_analysis["risk_flags"] == []
    assert "All extraction methods failed" in result.notes


def test_deeply_nested_input_does_not_raise() -> None:
    result = extract_analysis_payload("[" * 5000 + '{"items": []}')

    assert isinstance(result.items, list)


def test_extra_quality_sections_are_preserved() -> None:
    qa = {**QUALITY, "trade_scope_review": {"framing": "complete"}}

    result = extract_analysis_payload(json.dumps({"items": [], "quality_analysis": qa}))

    assert result.quality_analysis["trade_scope_review"] == {"framing": "complete"}


def test_normalize_fills_missing_keys_and_replaces_non_objects() -> None:
    normalized = normalize_quality_analysis({"risk_flags": [{"severity": "info"}]})

    assert list(normalized) == ["risk_flags", "completeness", "consistency", "audit_trail"]
    assert normalized["risk_flags"] == [{"severity": "info"}]
    assert normalize_quality_analysis("not a dict") == fallback_quality_analysis()


_VALID_PAYLOADS = (
    {"items": [_item("Stud wall"), _item("Door", page=2)], "quality_analysis": QUALITY},
    {"items": [], "quality_analysis": QUALITY},
    {"items": [_item(f"Outlet {index}", page=index) for index in range(1, 6)]},
)
_NOISE = "{}[],\"'"


def _mutate(text: str, rng: random.Random) -> str:
    choice = rng.randrange(4)
    if choice == 0:
        return text[: rng.randrange(len(text) + 1)]
    if choice == 1 and text:
        index = rng.randrange(len(text))
        return text[:index] + text[index + 1 :]
    if choice == 2:
        index = rng.randrange(len(text) + 1)
        return text[:index] + rng.choice(_NOISE) + text[index:]
    return f"Here is the analysis:\n```json\n{text}\n```\nLet me know if you need more."


@pytest.mark.parametrize("seed", range(5))
def test_mangled_output_always_yields_complete_structure(seed: int) -> None:
    rng = random.Random(seed)
    for _ in range(100):
        text = json.dumps(rng.choice(_VALID_PAYLOADS))
        for _ in range(rng.randint(1, 3)):
            text = _mutate(text, rng)

        result = extract_analysis_payload(text)

        assert isinstance(result.items, list)
        assert isinstance(result.quality_analysis, dict)
        assert set(QUALITY_KEYS) <= set(result.quality_analysis)

        again = extract_analysis_payload(json.dumps(result.payload()))
        assert again.repaired is False
        assert again.items == result.items
        assert again.quality_analysis == result.quality_analysis


@pytest.mark.parametrize("payload", _VALID_PAYLOADS)
def test_valid_payloads_survive_prose_wrapping_unchanged(payload: dict) -> None:
    wrapped = f"Here is the analysis:\n```json\n{json.dumps(payload)}\n```\nDone."

    result = extract_analysis_payload(wrapped)

    assert result.items == payload["items"]
    assert result.quality_analysis == normalize_quality_analysis(payload.get("quality_analysis"))
