"""
Collaborator contract for side-effecting actions.

Telephony, WhatsApp and email delivery live in other services. The engine
only sees `ActionExecutor.execute(action_config, context)` and records what
it reports. `wait` is never dispatched: the engine schedules it itself.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx

from services.errors import ExecutionError, FatalActionError
from services.flow_schemas import ActionType

logger = logging.getLogger(__name__)

DISPATCHED_ACTION_TYPES = frozenset(t for t in ActionType if t != ActionType.WAIT)


@dataclass
class ActionResult:
    success: bool
    detail: dict = field(default_factory=dict)


class ActionExecutor:
    """Performs one kind of action. Raise ExecutionError (or FatalActionError) on failure."""

    async def execute(self, action_config: dict, context: dict) -> ActionResult:
        raise NotImplementedError


class HttpActionExecutor(ActionExecutor):
    """
    Forwards an action to the external service that owns it.

    POST {url} {"action_type": ..., "action_config": {...}, "context": {...}}
    Expected response: {"success": true, "detail": {...}}; "fatal": true stops the flow.
    """

    def __init__(self, action_type: ActionType, url: Optional[str], api_key: Optional[str] = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.action_type = ActionType(action_type)
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def execute(self, action_config: dict, context: dict) -> ActionResult:
        if not self.url:
            raise ExecutionError(f"No service configured for {self.action_type.value} actions")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "action_type": self.action_type.value,
            "action_config": action_config,
            "context": context,
        }

        async with httpx.AsyncClient(transport=self.transport) as client:
            try:
                response = await client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            except httpx.HTTPError as e:
                raise ExecutionError(f"{self.action_type.value} service unreachable: {e}")

        if response.headers.get("content-type", "").startswith("application/json"):
            body = response.json()
        else:
            body = {"body": response.text[:500]}

        if response.status_code >= 400:
            error_cls = FatalActionError if isinstance(body, dict) and body.get("fatal") else ExecutionError
            raise error_cls(
                f"{self.action_type.value} service returned {response.status_code}",
                detail={"status_code": response.status_code, "response": body},
            )

        if not isinstance(body, dict):
            return ActionResult(success=True, detail={"response": body})
        if body.get("fatal"):
            raise FatalActionError(body.get("error") or f"{self.action_type.value} reported a fatal failure", detail=body)

        detail = body.get("detail", body)
        return ActionResult(success=bool(body.get("success", True)), detail=detail if isinstance(detail, dict) else {"response": detail})


class ActionExecutorRegistry:
    """Total mapping from every dispatched action type to its executor."""

    def __init__(self, executors: Dict[ActionType, ActionExecutor]):
        normalized = {ActionType(action_type): executor for action_type, executor in executors.items()}

        if ActionType.WAIT in normalized:
            raise ValueError("wait actions are scheduled by the engine and take no executor")
        missing = DISPATCHED_ACTION_TYPES - set(normalized)
        if missing:
            raise ValueError(f"Missing executors for: {sorted(t.value for t in missing)}")

        self._executors = normalized

    def executor_for(self, action_type) -> ActionExecutor:
        return self._executors[ActionType(action_type)]


def build_default_registry() -> ActionExecutorRegistry:
    """HTTP executors pointed at the services named in the environment."""
    api_key = os.getenv("ACTION_SERVICE_API_KEY")
    timeout = float(os.getenv("ACTION_SERVICE_HTTP_TIMEOUT", "30"))
    urls = {
        ActionType.AI_CALL: os.getenv("AI_CALL_SERVICE_URL"),
        ActionType.WHATSAPP_MESSAGE: os.getenv("WHATSAPP_SERVICE_URL"),
        ActionType.EMAIL: os.getenv("EMAIL_SERVICE_URL"),
    }
    for action_type, url in urls.items():
        if not url:
            logger.warning(f"[ActionExecutors] No service URL for {action_type.value}; those actions will fail.")

    return ActionExecutorRegistry({
        action_type: HttpActionExecutor(action_type, url, api_key=api_key, timeout=timeout)
        for action_type, url in urls.items()
    })
