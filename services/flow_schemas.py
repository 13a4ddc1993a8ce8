"""
Typed input models for flows, trigger conditions and actions.

Action configuration is a closed set of variants: every ActionType maps to
exactly one config model, and each model carries only its own fields.
"""
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from services.conditions import ConditionOperator, ConditionType, DEFAULT_OPERATORS, to_number
from services.errors import ValidationError


class ActionType(str, Enum):
    AI_CALL = "ai_call"
    WHATSAPP_MESSAGE = "whatsapp_message"
    EMAIL = "email"
    WAIT = "wait"


class ActionConfig(BaseModel):
    # Unknown keys are passed through to the executor untouched
    model_config = ConfigDict(extra="allow")


class AiCallConfig(ActionConfig):
    agent_id: str = Field(min_length=1)
    phone_number_id: str = Field(min_length=1)


class WhatsAppMessageConfig(ActionConfig):
    whatsapp_phone_number_id: str = Field(min_length=1)
    template_id: str = Field(min_length=1)


class EmailConfig(ActionConfig):
    email_template_id: str = Field(min_length=1)


class WaitConfig(ActionConfig):
    duration_minutes: float = Field(gt=0)


ACTION_CONFIG_MODELS = {
    ActionType.AI_CALL: AiCallConfig,
    ActionType.WHATSAPP_MESSAGE: WhatsAppMessageConfig,
    ActionType.EMAIL: EmailConfig,
    ActionType.WAIT: WaitConfig,
}

ACTION_CONFIG_ERRORS = {
    ActionType.AI_CALL: "AI call action requires agent_id and phone_number_id",
    ActionType.WHATSAPP_MESSAGE: "WhatsApp action requires whatsapp_phone_number_id and template_id",
    ActionType.EMAIL: "Email action requires email_template_id",
    ActionType.WAIT: "Wait action requires positive duration_minutes",
}


def describe_pydantic_error(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def _check_condition_value(condition_type: ConditionType, operator: ConditionOperator, value: Any):
    if operator != ConditionOperator.EXISTS and value in (None, ""):
        raise ValueError(f"{condition_type.value} condition requires a value")
    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        if to_number(value) is None:
            raise ValueError(f"{operator.value} requires a numeric value")
    if operator == ConditionOperator.IN and not isinstance(value, list):
        raise ValueError("'in' requires a list value")


class TriggerConditionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    condition_type: ConditionType = Field(validation_alias=AliasChoices("condition_type", "conditionType"))
    condition_operator: Optional[ConditionOperator] = Field(
        default=None, validation_alias=AliasChoices("condition_operator", "conditionOperator")
    )
    condition_value: Any = Field(default=None, validation_alias=AliasChoices("condition_value", "conditionValue"))

    @model_validator(mode="after")
    def check_operator_and_value(self):
        if self.condition_operator is None:
            self.condition_operator = DEFAULT_OPERATORS[self.condition_type]

        _check_condition_value(self.condition_type, self.condition_operator, self.condition_value)
        return self


class ActionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_order: int = Field(validation_alias=AliasChoices("action_order", "actionOrder"))
    action_type: ActionType = Field(validation_alias=AliasChoices("action_type", "actionType"))
    action_config: dict = Field(default_factory=dict, validation_alias=AliasChoices("action_config", "actionConfig"))
    condition_type: Optional[ConditionType] = Field(
        default=None, validation_alias=AliasChoices("condition_type", "conditionType")
    )
    condition_value: Any = Field(default=None, validation_alias=AliasChoices("condition_value", "conditionValue"))

    @model_validator(mode="after")
    def check_gate(self):
        # Gates always run with the type's default operator
        if self.condition_type is not None:
            _check_condition_value(self.condition_type, DEFAULT_OPERATORS[self.condition_type], self.condition_value)
        return self

    def validated_config(self) -> dict:
        model = ACTION_CONFIG_MODELS[self.action_type]
        try:
            return model.model_validate(self.action_config).model_dump()
        except PydanticValidationError:
            raise ValidationError(ACTION_CONFIG_ERRORS[self.action_type])


def _raw_order(raw: dict):
    if not isinstance(raw, dict):
        raise ValidationError("Each action must be an object")
    order = raw.get("action_order", raw.get("actionOrder"))
    if isinstance(order, bool) or not isinstance(order, int):
        raise ValidationError("Action orders must be positive integers")
    return order


def validate_actions(actions) -> List[dict]:
    """
    Validates a full replacement action list. Order checks run before any
    per-action config check, so a duplicate order is always reported as such.
    Returns plain dicts sorted by action_order.
    """
    if not isinstance(actions, list):
        raise ValidationError("actions must be an array")

    orders = [_raw_order(raw) for raw in actions]
    if len(orders) != len(set(orders)):
        raise ValidationError("Action orders must be unique within a flow")
    if any(order <= 0 for order in orders):
        raise ValidationError("Action orders must be positive integers")

    validated = []
    for raw in actions:
        try:
            action = ActionIn.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(describe_pydantic_error(e))
        validated.append({
            "action_order": action.action_order,
            "action_type": action.action_type.value,
            "action_config": action.validated_config(),
            "condition_type": action.condition_type.value if action.condition_type else None,
            "condition_value": action.condition_value,
        })

    return sorted(validated, key=lambda a: a["action_order"])


def validate_trigger_conditions(conditions) -> List[dict]:
    if not isinstance(conditions, list):
        raise ValidationError("conditions must be an array")

    validated = []
    for raw in conditions:
        try:
            condition = TriggerConditionIn.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(describe_pydantic_error(e))
        validated.append({
            "condition_type": condition.condition_type.value,
            "condition_operator": condition.condition_operator.value,
            "condition_value": condition.condition_value,
        })
    return validated


def validate_priority(priority) -> Optional[int]:
    if priority is None:
        return None
    if isinstance(priority, bool) or not isinstance(priority, int) or priority <= 0:
        raise ValidationError("priority must be a positive integer")
    return priority


def validate_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Flow name is required")
    return name.strip()
