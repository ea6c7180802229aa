import pytest

from app.services.ai.common.json_tools import extract_json_object, strip_code_fence


def test_strip_code_fence():
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence("```\n{}\n```") == "{}"
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


def test_bare_object():
    assert extract_json_object('{"vendor_name": "Acme", "total_amount": 12.5}') == {
        "vendor_name": "Acme",
        "total_amount": 12.5,
    }


def test_object_wrapped_in_prose():
    text = 'Here is the receipt: {"vendor_name": "Acme {North}", "nested": {"x": "}"}} Hope this helps.'
    assert extract_json_object(text) == {"vendor_name": "Acme {North}", "nested": {"x": "}"}}


def test_skips_a_broken_candidate():
    assert extract_json_object('{broken {"ok": true}') == {"ok": True}


@pytest.mark.parametrize("text", ["", "   ", "no json", "[1, 2, 3]", '"string"', "{unclosed"])
def test_non_objects_are_rejected(text):
    assert extract_json_object(text) is None
