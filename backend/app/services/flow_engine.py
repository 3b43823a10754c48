from __future__ import annotations

import json
import logging
import random
import re
import time
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from backend.app.models import (
    ContactRecord,
    DelayJobStatus,
    FlowNode,
    FlowRecord,
    FlowRunResult,
    MessageDirection,
    MessageStatus,
    SessionRecord,
    SessionStatus,
    utc_now,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.gateway import GatewayClient, GatewayError, GatewayFactory, SendResult
from backend.app.services.http_client import (
    HttpTransport,
    TransportError,
    urllib_transport,
)
from backend.app.settings import Settings
from backend.app.store import InMemoryStore

logger = logging.getLogger("zapdesk.flow")

RESUME_EARLY_TOLERANCE_SECONDS = 5
MAX_STEPS_PER_RUN = 200
WAITING_NODE_TYPES = {"waitInput", "menu"}
DEFAULT_TRANSFER_MESSAGE = "Transferindo para atendimento humano..."
AI_SYSTEM_PROMPT = "Você é um assistente prestativo. Responda de forma concisa e útil."

SAO_PAULO = timezone(timedelta(hours=-3))
GREETING_PREFIXES = [
    "Oi",
    "Olá",
    "Oi, tudo bem",
    "Olá, tudo bem",
    "Oi, tudo certo",
    "E aí",
    "Eai",
    "Oii",
    "Oláa",
    "Hey",
]

UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}

_PLACEHOLDER = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


def normalize_var_key(name: Any) -> str:
    text = str(name or "").strip()
    if text.startswith("{{") and text.endswith("}}"):
        text = text[2:-2]
    return text.strip()


def replace_variables(text: Any, variables: dict[str, Any]) -> str:
    def substitute(match: re.Match) -> str:
        key = match.group(1).strip()
        if key not in variables or variables[key] is None:
            return match.group(0)
        value = variables[key]
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)

    return _PLACEHOLDER.sub(substitute, str(text or ""))


def normalize_comparable(value: Any) -> str:
    decomposed = unicodedata.normalize("NFD", str(value or "").strip().lower())
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def personalized_greeting(now: datetime, rng: random.Random) -> str:
    """Time-of-day greeting in São Paulo time with a randomized opener."""
    hour = now.replace(tzinfo=timezone.utc).astimezone(SAO_PAULO).hour
    if 5 <= hour < 12:
        period = "bom dia"
    elif 12 <= hour < 18:
        period = "boa tarde"
    else:
        period = "boa noite"
    prefix = rng.choice(GREETING_PREFIXES)
    titled = period[0].upper() + period[1:]
    return rng.choice(
        [
            f"{prefix}! {titled}!",
            f"{prefix}, {period}!",
            f"{titled}! {prefix}!",
            f"{prefix}! {titled}, como você está?",
            f"{prefix}! {titled}, tudo bem?",
        ]
    )


def duration_seconds(value: Any, unit: Any) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        amount = 0.0
    return amount * UNIT_SECONDS.get(str(unit or "seconds"), 1)


def _as_number(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


def evaluate_condition(condition: dict[str, Any], variables: dict[str, Any], tags: list[str]) -> bool:
    if condition.get("type") == "tag":
        wanted = normalize_comparable(condition.get("tagName"))
        has_tag = any(normalize_comparable(tag) == wanted for tag in tags)
        return has_tag if condition.get("tagCondition", "has") == "has" else not has_tag

    raw = variables.get(normalize_var_key(condition.get("variable")))
    left_raw = "" if raw is None else str(raw).strip()
    right_raw = str(condition.get("value") or "").strip()
    left = normalize_comparable(left_raw)
    right = normalize_comparable(right_raw)
    operator = condition.get("operator") or "equals"

    if operator == "not_equals":
        return left != right
    if operator == "contains":
        return right in left
    if operator == "not_contains":
        return right not in left
    if operator == "startsWith":
        return left.startswith(right)
    if operator == "endsWith":
        return left.endswith(right)
    if operator in {"greater", "less"}:
        a, b = _to_float(left_raw), _to_float(right_raw)
        if a is None or b is None:
            return False
        return a > b if operator == "greater" else a < b
    if operator == "exists":
        return left_raw not in {"", "undefined"}
    if operator == "not_exists":
        return left_raw in {"", "undefined"}
    return left == right


def evaluate_conditions(data: dict[str, Any], variables: dict[str, Any], tags: list[str]) -> bool:
    conditions = [c for c in data.get("conditions") or [] if isinstance(c, dict)]
    if not conditions and data.get("variable"):
        conditions = [
            {
                "type": "variable",
                "variable": data.get("variable"),
                "operator": data.get("operator") or "equals",
                "value": data.get("value") or "",
            }
        ]
    if not conditions:
        return False
    results = (evaluate_condition(condition, variables, tags) for condition in conditions)
    if (data.get("logicOperator") or "and") == "and":
        return all(results)
    return any(results)


def pick_weighted_path(paths: list[dict[str, Any]], rng: random.Random) -> Optional[str]:
    if not paths:
        return None
    total = sum(float(path.get("percentage") or 0) for path in paths)
    roll = rng.random() * total
    cumulative = 0.0
    for path in paths:
        cumulative += float(path.get("percentage") or 0)
        if roll <= cumulative:
            return path.get("id")
    return paths[0].get("id")


def find_next_valid_node(flow: FlowRecord, from_node_id: str, visited: Optional[set] = None) -> Optional[str]:
    """Follow outgoing edges, skipping targets that no longer exist in the graph."""
    visited = visited if visited is not None else set()
    if from_node_id in visited:
        return None
    visited.add(from_node_id)
    for edge in flow.outgoing(from_node_id):
        if flow.node(edge.target):
            return edge.target
        deeper = find_next_valid_node(flow, edge.target, visited)
        if deeper:
            return deeper
    return None


def to_epoch_ms(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def from_epoch_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc).replace(tzinfo=None)


@dataclass
class _Outcome:
    next_node_id: Optional[str] = None
    finished: bool = False
    waiting: bool = False
    scheduled: bool = False
    error: Optional[str] = None


@dataclass
class _RunState:
    session: SessionRecord
    flow: FlowRecord
    contact: ContactRecord
    variables: dict[str, Any]
    current_node_id: str
    resume_from_timeout: bool = False
    client: Optional[GatewayClient] = None
    executed: list[str] = field(default_factory=list)

    @property
    def sent_node_ids(self) -> list[str]:
        return self.variables["_sent_node_ids"]


class FlowEngine:
    def __init__(
        self,
        *,
        store: InMemoryStore,
        settings: Settings,
        gateway_factory: GatewayFactory,
        metrics: Optional[MetricsRegistry] = None,
        http_transport: HttpTransport = urllib_transport,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.gateway_factory = gateway_factory
        self.metrics = metrics
        self.http_transport = http_transport
        self.sleeper = sleeper
        self.clock = clock
        self.rng = rng or random.Random()
        self._handlers: dict[str, Callable[[_RunState, FlowNode], _Outcome]] = {
            "start": self._node_start,
            "text": self._node_text,
            "image": self._node_media,
            "audio": self._node_media,
            "video": self._node_media,
            "document": self._node_media,
            "delay": self._node_delay,
            "waitInput": self._node_wait_input,
            "menu": self._node_menu,
            "condition": self._node_condition,
            "setVariable": self._node_set_variable,
            "tag": self._node_tag,
            "transfer": self._node_transfer,
            "end": self._node_end,
            "ai": self._node_ai,
            "webhook": self._node_webhook,
            "randomizer": self._node_randomizer,
        }

    def process_session(
        self,
        session_id: str,
        *,
        user_input: Optional[str] = None,
        resume_from_delay: bool = False,
        resume_from_timeout: bool = False,
    ) -> FlowRunResult:
        session = self.store.get_session(session_id)
        if session.status != SessionStatus.active:
            return FlowRunResult(
                session_id=session_id,
                skipped=True,
                reason="session_completed",
                status=session.status,
                current_node_id=session.current_node_id,
            )

        session, acquired = self.store.try_lock_session(
            session_id,
            now=self.clock(),
            lock_timeout_seconds=self.settings.flow_lock_timeout_seconds,
        )
        if not acquired:
            logger.info("flow_session_locked session_id=%s", session_id)
            return FlowRunResult(
                session_id=session_id,
                skipped=True,
                reason="session_locked",
                status=session.status,
                current_node_id=session.current_node_id,
            )

        try:
            return self._run(
                session,
                user_input=user_input,
                resume_from_delay=resume_from_delay,
                resume_from_timeout=resume_from_timeout,
            )
        finally:
            self.store.release_session_lock(session_id)

    def _run(
        self,
        session: SessionRecord,
        *,
        user_input: Optional[str],
        resume_from_delay: bool,
        resume_from_timeout: bool,
    ) -> FlowRunResult:
        flow = self.store.get_flow(session.flow_id)
        contact = self.store.get_contact(session.contact_id)
        variables = dict(session.variables)
        variables["_sent_node_ids"] = list(variables.get("_sent_node_ids") or [])
        variables["saudacao_personalizada"] = personalized_greeting(self.clock(), self.rng)
        state = _RunState(
            session=session,
            flow=flow,
            contact=contact,
            variables=variables,
            current_node_id=session.current_node_id or "start-1",
            resume_from_timeout=resume_from_timeout,
        )

        if user_input is not None:
            self._apply_user_input(state, user_input)

        if resume_from_delay:
            early = self._resume_delay(state)
            if early is not None:
                return early

        for _ in range(MAX_STEPS_PER_RUN):
            node = flow.node(state.current_node_id)
            if node is None:
                recovered = find_next_valid_node(flow, state.current_node_id)
                if recovered:
                    logger.warning(
                        "flow_node_missing session_id=%s node_id=%s recovered_to=%s",
                        session.id,
                        state.current_node_id,
                        recovered,
                    )
                    state.current_node_id = recovered
                    continue
                return self._fail_recovery(state)

            self.store.record_flow_analytics(session, node_id=node.id, node_type=node.type)
            state.executed.append(node.id)
            if self.metrics:
                self.metrics.increment("flow_nodes_executed")

            handler = self._handlers.get(node.type, self._node_passthrough)
            outcome = handler(state, node)

            if outcome.error is not None:
                return self._send_failed(state, node, outcome.error)
            if outcome.waiting:
                return self._result(state, waiting_for_input=True)
            if outcome.scheduled:
                return self._result(state, scheduled_delay=True)
            if outcome.finished:
                return self._complete(state)
            if outcome.next_node_id is None:
                return self._complete(state)
            state.current_node_id = outcome.next_node_id

        logger.warning("flow_step_limit session_id=%s node_id=%s", session.id, state.current_node_id)
        self._save(state)
        return self._result(state, reason="step_limit")

    # input / resume checkpoints

    def _apply_user_input(self, state: _RunState, user_input: str) -> None:
        text = user_input.strip()
        state.variables["lastMessage"] = text
        state.variables["ultima_mensagem"] = text
        node = state.flow.node(state.current_node_id)
        if node is None or node.type not in WAITING_NODE_TYPES:
            self._save(state)
            return

        default_key = "resposta" if node.type == "waitInput" else "menu_resposta"
        key = normalize_var_key(node.data.get("variableName")) or default_key
        state.variables[key] = text

        target = None
        if node.type == "menu":
            for edge in state.flow.outgoing(node.id):
                if edge.source_handle and normalize_comparable(edge.source_handle) == normalize_comparable(text):
                    target = edge.target
                    break
        if target is None:
            target = self._first_target(state.flow, node.id)
        if target:
            state.current_node_id = target
        self._save(state, timeout_at_utc=None)

    def _resume_delay(self, state: _RunState) -> Optional[FlowRunResult]:
        pending = state.variables.get("_pendingDelay")
        if not isinstance(pending, dict):
            logger.info("flow_resume_without_pending_delay session_id=%s", state.session.id)
            return None
        resume_at = from_epoch_ms(pending.get("resumeAt") or 0)
        remaining = (resume_at - self.clock()).total_seconds()
        if remaining > RESUME_EARLY_TOLERANCE_SECONDS:
            self.store.schedule_delay_job(
                session_id=state.session.id,
                user_id=state.session.user_id,
                run_at=resume_at,
            )
            self._save(state)
            return self._result(state, scheduled_delay=True, reason="delay_pending")

        delay_node_id = str(pending.get("nodeId") or state.current_node_id)
        target = self._first_target(state.flow, delay_node_id)
        state.variables.pop("_pendingDelay", None)
        if target is None:
            return self._complete(state)
        state.current_node_id = target
        self._save(state)
        return None

    # node handlers

    def _node_start(self, state: _RunState, node: FlowNode) -> _Outcome:
        return _Outcome(next_node_id=find_next_valid_node(state.flow, node.id))

    def _node_passthrough(self, state: _RunState, node: FlowNode) -> _Outcome:
        return _Outcome(next_node_id=self._first_target(state.flow, node.id))

    def _node_text(self, state: _RunState, node: FlowNode) -> _Outcome:
        if node.id in state.sent_node_ids:
            return self._node_passthrough(state, node)
        message = replace_variables(node.data.get("message"), state.variables)
        if message:
            typing_ms = self._typing_ms(node)
            error = self._send(
                state,
                node,
                lambda client: client.send_text(state.contact.phone, message, typing_ms=typing_ms),
                content=message,
            )
            if error is not None:
                return _Outcome(error=error)
        return self._node_passthrough(state, node)

    def _node_media(self, state: _RunState, node: FlowNode) -> _Outcome:
        if node.id in state.sent_node_ids:
            return self._node_passthrough(state, node)
        url = replace_variables(node.data.get("mediaUrl") or node.data.get("url"), state.variables)
        if url:
            caption = replace_variables(node.data.get("caption"), state.variables)
            file_name = node.data.get("fileName")
            typing_ms = self._typing_ms(node)
            error = self._send(
                state,
                node,
                lambda client: client.send_media(
                    state.contact.phone,
                    node.type,
                    url,
                    caption=caption,
                    file_name=file_name,
                    typing_ms=typing_ms,
                ),
                content=(file_name or "") if node.type == "document" else caption,
                message_type=node.type,
                media_url=url,
            )
            if error is not None:
                return _Outcome(error=error)
        return self._node_passthrough(state, node)

    def _node_delay(self, state: _RunState, node: FlowNode) -> _Outcome:
        data = node.data
        if data.get("delayType") == "variable":
            low = int(_as_number(data.get("minDelay") or 5, 5))
            high = int(_as_number(data.get("maxDelay") or 15, 15))
            amount = self.rng.randint(min(low, high), max(low, high))
        else:
            amount = data.get("delay") or 5
        seconds = duration_seconds(amount, data.get("unit") or "seconds")

        if seconds > self.settings.flow_max_inline_delay_seconds:
            resume_at = self.clock() + timedelta(seconds=seconds)
            state.variables["_pendingDelay"] = {
                "nodeId": node.id,
                "resumeAt": to_epoch_ms(resume_at),
                "delayMs": int(seconds * 1000),
            }
            state.current_node_id = node.id
            self._save(state)
            self.store.schedule_delay_job(
                session_id=state.session.id,
                user_id=state.session.user_id,
                run_at=resume_at,
            )
            logger.info(
                "flow_delay_scheduled session_id=%s node_id=%s resume_at=%s",
                state.session.id,
                node.id,
                resume_at.isoformat(),
            )
            return _Outcome(scheduled=True)

        self.sleeper(seconds)
        return self._node_passthrough(state, node)

    def _node_wait_input(self, state: _RunState, node: FlowNode) -> _Outcome:
        if state.resume_from_timeout:
            return self._timeout_expired(state, node)
        return self._wait_for_input(state, node)

    def _node_menu(self, state: _RunState, node: FlowNode) -> _Outcome:
        if state.resume_from_timeout:
            return self._timeout_expired(state, node)
        if node.id not in state.sent_node_ids:
            message = replace_variables(node.data.get("message"), state.variables)
            options = str(node.data.get("options") or "")
            full_message = f"{message}\n\n{options}".strip()
            if full_message:
                error = self._send(
                    state,
                    node,
                    lambda client: client.send_text(state.contact.phone, full_message),
                    content=full_message,
                )
                if error is not None:
                    return _Outcome(error=error)
        return self._wait_for_input(state, node)

    def _node_condition(self, state: _RunState, node: FlowNode) -> _Outcome:
        tags = self.store.get_contact(state.contact.id).tags
        met = evaluate_conditions(node.data, state.variables, tags)
        handle = "yes" if met else "no"
        for edge in state.flow.outgoing(node.id):
            if edge.source_handle == handle:
                return _Outcome(next_node_id=edge.target)
        return _Outcome(finished=True)

    def _node_set_variable(self, state: _RunState, node: FlowNode) -> _Outcome:
        key = normalize_var_key(node.data.get("variableName"))
        if key:
            state.variables[key] = replace_variables(node.data.get("value"), state.variables)
        return self._node_passthrough(state, node)

    def _node_tag(self, state: _RunState, node: FlowNode) -> _Outcome:
        tag_name = str(node.data.get("tagName") or "").strip()
        if tag_name:
            contact = self.store.get_contact(state.contact.id)
            tags = list(contact.tags)
            if (node.data.get("action") or "add") == "remove":
                tags = [tag for tag in tags if tag != tag_name]
            elif tag_name not in tags:
                tags.append(tag_name)
            state.contact = self.store.update_contact(contact.id, tags=tags)
        return self._node_passthrough(state, node)

    def _node_transfer(self, state: _RunState, node: FlowNode) -> _Outcome:
        if node.id not in state.sent_node_ids:
            message = replace_variables(
                node.data.get("message") or DEFAULT_TRANSFER_MESSAGE, state.variables
            )
            error = self._send(
                state,
                node,
                lambda client: client.send_text(state.contact.phone, message),
                content=message,
            )
            if error is not None:
                return _Outcome(error=error)
        return _Outcome(finished=True)

    def _node_end(self, state: _RunState, node: FlowNode) -> _Outcome:
        return _Outcome(finished=True)

    def _node_ai(self, state: _RunState, node: FlowNode) -> _Outcome:
        prompt = replace_variables(node.data.get("prompt"), state.variables)
        target = node.data.get("saveToVariable") or "ai_response"
        if prompt and not self.settings.ai_gateway_api_key:
            logger.warning("flow_ai_not_configured session_id=%s node_id=%s", state.session.id, node.id)
        elif prompt:
            payload = {
                "model": node.data.get("model") or self.settings.ai_default_model,
                "messages": [
                    {"role": "system", "content": AI_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            }
            headers = {"Authorization": f"Bearer {self.settings.ai_gateway_api_key}"}
            try:
                response = self.http_transport(
                    "POST", self.settings.ai_gateway_url, headers, payload, 60
                )
            except TransportError as exc:
                logger.warning("flow_ai_failed session_id=%s error=%s", state.session.id, exc)
            else:
                if response.ok:
                    choices = response.json_dict().get("choices") or [{}]
                    content = ((choices[0] or {}).get("message") or {}).get("content") or ""
                    state.variables[target] = content
                else:
                    logger.warning(
                        "flow_ai_rejected session_id=%s status=%s", state.session.id, response.status
                    )
        return self._node_passthrough(state, node)

    def _node_webhook(self, state: _RunState, node: FlowNode) -> _Outcome:
        url = replace_variables(node.data.get("url"), state.variables)
        if url:
            method = str(node.data.get("method") or "POST").upper()
            raw_headers = node.data.get("headers")
            if not isinstance(raw_headers, dict):
                raw_headers = {}
            headers = {str(k): str(v) for k, v in raw_headers.items()}
            body = replace_variables(node.data.get("body"), state.variables)
            try:
                response = self.http_transport(
                    method, url, headers, body if method != "GET" else None, 30
                )
            except TransportError as exc:
                logger.warning("flow_webhook_failed session_id=%s url=%s error=%s", state.session.id, url, exc)
            else:
                target = node.data.get("saveToVariable")
                if target:
                    state.variables[target] = response.body if response.body is not None else response.text
        return self._node_passthrough(state, node)

    def _node_randomizer(self, state: _RunState, node: FlowNode) -> _Outcome:
        selected = pick_weighted_path(list(node.data.get("paths") or []), self.rng)
        for edge in state.flow.outgoing(node.id):
            if selected is not None and edge.source_handle == selected:
                return _Outcome(next_node_id=edge.target)
        return self._node_passthrough(state, node)

    # helpers

    def _wait_for_input(self, state: _RunState, node: FlowNode) -> _Outcome:
        timeout_at = None
        if node.data.get("timeoutEnabled") is True:
            seconds = duration_seconds(
                node.data.get("timeout") or 5, node.data.get("timeoutUnit") or "minutes"
            )
            timeout_at = self.clock() + timedelta(seconds=seconds)
        state.current_node_id = node.id
        self._save(state, timeout_at_utc=timeout_at)
        if timeout_at:
            self.store.schedule_delay_job(
                session_id=state.session.id,
                user_id=state.session.user_id,
                run_at=timeout_at,
            )
        return _Outcome(waiting=True)

    def _timeout_expired(self, state: _RunState, node: FlowNode) -> _Outcome:
        state.resume_from_timeout = False
        key = normalize_var_key(node.data.get("variableName"))
        if key:
            state.variables[key] = ""
        self._save(state, timeout_at_utc=None)
        return self._node_passthrough(state, node)

    def _typing_ms(self, node: FlowNode) -> int:
        if not node.data.get("showPresence"):
            return 0
        return int(_as_number(node.data.get("presenceDelay") or 3, 3) * 1000)

    def _client(self, state: _RunState) -> GatewayClient:
        if state.client is None:
            if not state.session.instance_id:
                raise GatewayError("session has no instance")
            instance = self.store.get_instance(state.session.instance_id)
            state.client = self.gateway_factory.for_instance(instance)
        return state.client

    def _send(
        self,
        state: _RunState,
        node: FlowNode,
        action: Callable[[GatewayClient], SendResult],
        *,
        content: str,
        message_type: str = "text",
        media_url: Optional[str] = None,
    ) -> Optional[str]:
        """Send through the gateway and log the outbound message. Returns an error or None."""
        try:
            result = action(self._client(state))
        except GatewayError as exc:
            result = SendResult(ok=False, error=str(exc))
        self.store.record_message(
            user_id=state.session.user_id,
            contact_id=state.contact.id,
            instance_id=state.session.instance_id,
            direction=MessageDirection.outbound,
            content=content,
            message_type=message_type,
            media_url=media_url,
            remote_message_id=result.remote_message_id,
            status=MessageStatus.sent if result.ok else MessageStatus.failed,
            flow_session_id=state.session.id,
        )
        if self.metrics:
            self.metrics.increment("messages_sent" if result.ok else "messages_failed")
        if not result.ok:
            return result.error or "unknown send error"
        state.sent_node_ids.append(node.id)
        return None

    def _first_target(self, flow: FlowRecord, node_id: str) -> Optional[str]:
        edges = flow.outgoing(node_id)
        return edges[0].target if edges else None

    def _save(self, state: _RunState, **changes: Any) -> None:
        state.session = self.store.update_session(
            state.session.id,
            current_node_id=state.current_node_id,
            variables=dict(state.variables),
            last_interaction_utc=self.clock(),
            **changes,
        )

    def _complete(self, state: _RunState) -> FlowRunResult:
        self._save(
            state,
            status=SessionStatus.completed,
            completed_at_utc=self.clock(),
            timeout_at_utc=None,
        )
        job = self.store.get_delay_job(state.session.id)
        if job and job.status == DelayJobStatus.scheduled:
            self.store.update_delay_job(state.session.id, status=DelayJobStatus.done)
        logger.info("flow_session_completed session_id=%s flow_id=%s", state.session.id, state.flow.id)
        return self._result(state)

    def _send_failed(self, state: _RunState, node: FlowNode, error: str) -> FlowRunResult:
        logger.warning(
            "flow_send_failed session_id=%s node_id=%s error=%s", state.session.id, node.id, error
        )
        state.variables["_last_send_error"] = error
        state.variables["_last_failed_node_id"] = node.id
        state.variables["_last_failed_at"] = self.clock().isoformat()
        state.current_node_id = node.id
        self._save(state)
        return self._result(state, success=False, error=error)

    def _fail_recovery(self, state: _RunState) -> FlowRunResult:
        missing = state.current_node_id
        logger.error("flow_node_unrecoverable session_id=%s node_id=%s", state.session.id, missing)
        state.variables["_recovery_error"] = f"Node {missing} not found in flow"
        state.variables["_recovery_failed_at"] = self.clock().isoformat()
        self._save(state, status=SessionStatus.completed, completed_at_utc=self.clock())
        return self._result(state, success=False, error="node not found")

    def _result(self, state: _RunState, **overrides: Any) -> FlowRunResult:
        values: dict[str, Any] = {
            "session_id": state.session.id,
            "status": state.session.status,
            "current_node_id": state.session.current_node_id,
            "nodes_executed": list(state.executed),
        }
        values.update(overrides)
        return FlowRunResult(**values)
