"""Tests for the JSON scanning helpers and the repair rule table."""

import json
import unittest

from expense_parser.services.ai.common.json_tools import (
    find_balanced_end,
    find_first_opener,
    iter_json_fragments,
)
from expense_parser.services.ai.transaction_parse.repair import (
    REPAIR_RULES,
    close_unbalanced_brackets,
    remove_trailing_commas,
    repair_json,
    slice_embedded_json,
    strip_markdown_fences,
)

WELL_FORMED = '{"transactions": [{"transaction_type": "expense", "amount": 25000, "description": "a, b]"}]}'


class JsonScanningTests(unittest.TestCase):
    def test_find_first_opener(self):
        self.assertEqual(find_first_opener('abc [1] {"a": 1}'), 4)
        self.assertEqual(find_first_opener('x {"a": [1]}'), 2)
        self.assertIsNone(find_first_opener("no json here"))

    def test_balanced_end_ignores_brackets_in_strings(self):
        text = 'pre {"a": "}]", "b": [1, 2]} post'
        start = text.index("{")
        end = find_balanced_end(text, start)
        self.assertEqual(json.loads(text[start : end + 1]), {"a": "}]", "b": [1, 2]})

    def test_balanced_end_unclosed_or_mismatched(self):
        self.assertIsNone(find_balanced_end('{"a": [1, 2}', 0))
        self.assertIsNone(find_balanced_end('{"a": 1', 0))

    def test_fragments_left_to_right(self):
        text = 'Found: {"amount": 1} and {"amount": 2} then {"amount": 3'
        values = [value for _, value in iter_json_fragments(text)]
        self.assertEqual(values, [{"amount": 1}, {"amount": 2}])

    def test_outer_fragment_replaces_nested(self):
        text = 'x {"a": {"b": 1}, "c": 2} y'
        values = [value for _, value in iter_json_fragments(text)]
        self.assertEqual(values, [{"a": {"b": 1}, "c": 2}])

    def test_nested_fragments_kept_when_outer_is_broken(self):
        text = '{"transactions": [{"amount": 1}, {"amount": 2}, {"amount"'
        values = [value for _, value in iter_json_fragments(text)]
        self.assertEqual(values, [{"amount": 1}, {"amount": 2}])

    def test_stray_quote_in_prose_does_not_hide_fragments(self):
        text = 'It"s done: {"amount": 5}'
        values = [value for _, value in iter_json_fragments(text)]
        self.assertEqual(values, [{"amount": 5}])

    def test_depth_is_bounded(self):
        deep = "{" * 200 + "}" * 200
        # Nothing parses as an object on its own, but the scan must finish.
        self.assertEqual(list(iter_json_fragments(deep + '{"amount": 1}', max_depth=8)), [(400, {"amount": 1})])


class RepairRuleTests(unittest.TestCase):
    def test_every_rule_is_noop_on_valid_json(self):
        for rule in REPAIR_RULES:
            with self.subTest(rule=rule.name):
                self.assertEqual(rule.apply(WELL_FORMED), WELL_FORMED)

    def test_strip_markdown_fences(self):
        self.assertEqual(strip_markdown_fences('```json\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(strip_markdown_fences('```\n[1]\n```'), "[1]")
        self.assertEqual(strip_markdown_fences('Result:\n```json\n{"a": 1}\n```\nDone'), '{"a": 1}')

    def test_strip_unterminated_fence(self):
        self.assertEqual(strip_markdown_fences('```json\n{"a": 1'), '{"a": 1')

    def test_remove_trailing_commas(self):
        self.assertEqual(remove_trailing_commas('{"a": [1, 2,], "b": 3,}'), '{"a": [1, 2], "b": 3}')

    def test_trailing_comma_inside_string_is_kept(self):
        text = '{"a": "x,}"}'
        self.assertEqual(remove_trailing_commas(text), text)

    def test_close_truncated_document(self):
        text = '{"transactions": [{"transaction_type": "expense", "amount": 25000, "description": "coffee"'
        repaired = close_unbalanced_brackets(text)
        self.assertEqual(json.loads(repaired)["transactions"][0]["description"], "coffee")

    def test_close_unterminated_string(self):
        repaired = close_unbalanced_brackets('{"transactions": [{"description": "cof')
        self.assertEqual(json.loads(repaired), {"transactions": [{"description": "cof"}]})

    def test_close_dangling_comma_colon_and_key(self):
        self.assertEqual(json.loads(close_unbalanced_brackets('{"a": 1,')), {"a": 1})
        self.assertEqual(json.loads(close_unbalanced_brackets('{"a": 1, "b":')), {"a": 1, "b": None})
        self.assertEqual(json.loads(close_unbalanced_brackets('{"a": 1, "b"')), {"a": 1, "b": None})

    def test_close_partial_literal_and_number(self):
        self.assertEqual(json.loads(close_unbalanced_brackets('{"a": tru')), {"a": None})
        self.assertEqual(json.loads(close_unbalanced_brackets('{"a": 25.')), {"a": 25})

    def test_close_keeps_nesting_order(self):
        self.assertEqual(close_unbalanced_brackets('{"a": [{"b": [1'), '{"a": [{"b": [1]}]}')

    def test_close_leaves_mismatched_text(self):
        text = '{"a": [1}'
        self.assertEqual(close_unbalanced_brackets(text), text)

    def test_slice_embedded_json(self):
        text = 'Some text before {"transactions": []} and after'
        self.assertEqual(slice_embedded_json(text), '{"transactions": []}')


class RepairJsonTests(unittest.TestCase):
    def test_reports_rules_used(self):
        outcome = repair_json('```json\n{"transactions": [{"amount": 1},]}\n```')
        self.assertIsNotNone(outcome)
        self.assertEqual(outcome.rules_applied, ("strip_markdown_fences", "remove_trailing_commas"))
        self.assertEqual(outcome.value, {"transactions": [{"amount": 1}]})

    def test_prose_wrapped(self):
        outcome = repair_json('Some text before {"transactions": [{"amount": 1}]} and after')
        self.assertEqual(outcome.rules_applied, ("slice_embedded_json",))

    def test_unrepairable_returns_none(self):
        self.assertIsNone(repair_json("invalid"))
        self.assertIsNone(repair_json(""))

    def test_input_is_not_modified(self):
        text = '{"a": 1,'
        repair_json(text)
        self.assertEqual(text, '{"a": 1,')
