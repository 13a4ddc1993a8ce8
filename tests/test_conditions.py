import unittest
import sys
import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# Add parent dir to path to import services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.conditions import (
    CONDITION_FIELDS,
    ConditionOperator,
    ConditionType,
    DEFAULT_OPERATORS,
    compare,
    evaluate_action_gate,
    evaluate_condition,
    evaluate_trigger_conditions,
    get_context_value,
)
from services.errors import ValidationError
from services.flow_schemas import (
    ACTION_CONFIG_ERRORS,
    ACTION_CONFIG_MODELS,
    ActionType,
    validate_actions,
    validate_trigger_conditions,
)

NOW = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


class TestCompare(unittest.TestCase):
    def test_equals_is_case_insensitive(self):
        self.assertTrue(compare(ConditionOperator.EQUALS, "New ", "new"))
        self.assertFalse(compare(ConditionOperator.EQUALS, "qualified", "new"))

    def test_contains_on_lists_and_strings(self):
        self.assertTrue(compare(ConditionOperator.CONTAINS, ["VIP", "hot"], "vip"))
        self.assertFalse(compare(ConditionOperator.CONTAINS, ["cold"], "vip"))
        self.assertTrue(compare(ConditionOperator.CONTAINS, "facebook ads", "ads"))
        self.assertTrue(compare(ConditionOperator.NOT_CONTAINS, ["cold"], "vip"))

    def test_numeric_operators(self):
        self.assertTrue(compare(ConditionOperator.GREATER_THAN, 80, "50"))
        self.assertFalse(compare(ConditionOperator.GREATER_THAN, 50, 50))
        self.assertTrue(compare(ConditionOperator.LESS_THAN, "10", 20))
        self.assertFalse(compare(ConditionOperator.GREATER_THAN, "n/a", 20))

    def test_missing_value_only_satisfies_negations(self):
        self.assertFalse(compare(ConditionOperator.EQUALS, None, "new"))
        self.assertFalse(compare(ConditionOperator.GREATER_THAN, None, 1))
        self.assertTrue(compare(ConditionOperator.NOT_EQUALS, None, "new"))
        self.assertFalse(compare(ConditionOperator.EXISTS, None, None))

    def test_in_operator(self):
        self.assertTrue(compare(ConditionOperator.IN, "Referral", ["web", "referral"]))
        self.assertFalse(compare(ConditionOperator.IN, "ads", ["web", "referral"]))


class TestEvaluateCondition(unittest.TestCase):
    def test_default_operators(self):
        context = {"lead_stage": "new", "lead_score": 75, "tags": ["vip"]}
        self.assertTrue(evaluate_condition("lead_stage", None, "new", context))
        self.assertTrue(evaluate_condition("lead_score", None, 50, context))
        self.assertTrue(evaluate_condition("tag", None, "vip", context))

    def test_lead_source_reads_source_key(self):
        self.assertTrue(evaluate_condition("lead_source", "equals", "website", {"source": "Website"}))

    def test_hours_since_last_interaction(self):
        context = {"last_interaction_at": (NOW - timedelta(hours=30)).isoformat()}
        self.assertTrue(evaluate_condition("hours_since_last_interaction", None, 24, context, NOW))
        self.assertFalse(evaluate_condition("hours_since_last_interaction", "greater_than", 48, context, NOW))

    def test_context_lookup_order(self):
        context = {"variables": {"call_outcome": "no_answer"}, "trigger": {"lead_stage": "new"}}
        self.assertEqual(get_context_value(context, "call_outcome"), "no_answer")
        self.assertEqual(get_context_value(context, "lead_stage"), "new")
        self.assertEqual(get_context_value(context, "trigger.lead_stage"), "new")
        self.assertIsNone(get_context_value(context, "missing"))

    def test_trigger_conditions_are_anded_and_lazy(self):
        conditions = [
            SimpleNamespace(condition_type="lead_stage", condition_operator="equals", condition_value="qualified"),
            # Would raise if evaluated
            SimpleNamespace(condition_type="not_a_type", condition_operator="equals", condition_value="x"),
        ]
        self.assertFalse(evaluate_trigger_conditions(conditions, {"lead_stage": "new"}, NOW))

    def test_empty_condition_set_matches(self):
        self.assertTrue(evaluate_trigger_conditions([], {}, NOW))

    def test_action_gate(self):
        self.assertTrue(evaluate_action_gate({"condition_type": None}, {}, NOW))
        gated = {"condition_type": "previous_action_outcome", "condition_value": "failed"}
        self.assertTrue(evaluate_action_gate(gated, {"last_outcome": "failed"}, NOW))
        self.assertFalse(evaluate_action_gate(gated, {"last_outcome": "success"}, NOW))


class TestConditionValidation(unittest.TestCase):
    def test_fills_default_operator(self):
        validated = validate_trigger_conditions([{"conditionType": "tag", "conditionValue": "vip"}])
        self.assertEqual(validated[0]["condition_operator"], "contains")

    def test_rejects_unknown_type(self):
        with self.assertRaises(ValidationError):
            validate_trigger_conditions([{"condition_type": "weather", "condition_value": "sunny"}])

    def test_numeric_operator_needs_number(self):
        with self.assertRaises(ValidationError):
            validate_trigger_conditions([{"condition_type": "lead_score", "condition_value": "high"}])

    def test_in_needs_list(self):
        with self.assertRaises(ValidationError):
            validate_trigger_conditions([{"condition_type": "lead_source", "condition_operator": "in", "condition_value": "web"}])


class TestActionValidation(unittest.TestCase):
    def test_sorted_by_order(self):
        actions = validate_actions([
            {"action_order": 2, "action_type": "wait", "action_config": {"duration_minutes": 5}},
            {"actionOrder": 1, "actionType": "email", "actionConfig": {"email_template_id": "t"}},
        ])
        self.assertEqual([a["action_order"] for a in actions], [1, 2])
        self.assertEqual(actions[0]["action_type"], "email")

    def test_duplicate_orders(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_actions([
                {"action_order": 1, "action_type": "email", "action_config": {"email_template_id": "t"}},
                {"action_order": 1, "action_type": "wait", "action_config": {}},
            ])
        self.assertEqual(ctx.exception.message, "Action orders must be unique within a flow")

    def test_non_positive_orders(self):
        for order in (0, -1, "1", 1.5, True):
            with self.assertRaises(ValidationError):
                validate_actions([{"action_order": order, "action_type": "email", "action_config": {"email_template_id": "t"}}])

    def test_config_requirements(self):
        cases = [
            ("ai_call", {"agent_id": "a"}, "AI call action requires agent_id and phone_number_id"),
            ("whatsapp_message", {"template_id": "t"}, "WhatsApp action requires whatsapp_phone_number_id and template_id"),
            ("email", {}, "Email action requires email_template_id"),
            ("wait", {"duration_minutes": 0}, "Wait action requires positive duration_minutes"),
        ]
        for action_type, config, message in cases:
            with self.assertRaises(ValidationError) as ctx:
                validate_actions([{"action_order": 1, "action_type": action_type, "action_config": config}])
            self.assertEqual(ctx.exception.message, message)

    def test_unknown_action_type(self):
        with self.assertRaises(ValidationError):
            validate_actions([{"action_order": 1, "action_type": "sms", "action_config": {}}])

    def test_gate_value_checked_against_default_operator(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_actions([{
                "action_order": 1,
                "action_type": "email",
                "action_config": {"email_template_id": "t"},
                "condition_type": "lead_score",
                "condition_value": "abc",
            }])
        self.assertIn("numeric", ctx.exception.message)

    def test_gate_requires_value(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_actions([{
                "action_order": 1,
                "action_type": "email",
                "action_config": {"email_template_id": "t"},
                "condition_type": "lead_stage",
            }])
        self.assertIn("requires a value", ctx.exception.message)

    def test_valid_gate_kept(self):
        actions = validate_actions([{
            "action_order": 1,
            "action_type": "email",
            "action_config": {"email_template_id": "t"},
            "conditionType": "lead_score",
            "conditionValue": "50",
        }])
        self.assertEqual(actions[0]["condition_type"], "lead_score")
        self.assertEqual(actions[0]["condition_value"], "50")


class TestTypeTables(unittest.TestCase):
    def test_every_condition_type_has_field_and_default_operator(self):
        self.assertEqual(set(CONDITION_FIELDS), set(ConditionType))
        self.assertEqual(set(DEFAULT_OPERATORS), set(ConditionType))

    def test_every_action_type_has_config_model_and_error(self):
        self.assertEqual(set(ACTION_CONFIG_MODELS), set(ActionType))
        self.assertEqual(set(ACTION_CONFIG_ERRORS), set(ActionType))


if __name__ == '__main__':
    unittest.main()
