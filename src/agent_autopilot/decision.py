"""
Decision making for Agent Autopilot.

DecisionEngine asks an external reasoning provider whether a candidate
action should go ahead. When no provider is configured, or the provider
fails in any way, a deterministic rule set produces the verdict instead,
so a decision is always available.
"""

import json
import logging
import re
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from .errors import ProviderError
from .permissions import PermissionStore
from .types import Decision, Intent, MarketContext, NetworkCongestion

logger = logging.getLogger(__name__)

GAS_PRICE_CEILING = Decimal('50')
LARGE_AMOUNT = Decimal('100')

_FENCE_PATTERN = re.compile(r'^```(?:json)?\s*(.*?)\s*```$', re.DOTALL)


class ReasoningProvider(Protocol):
    """External model that turns prompts into a Decision."""

    def decide(self, system_context: str, user_context: str) -> Decision:
        """
        Return a decision for the given prompts.

        Raises:
            ProviderError: If the provider is unreachable or its reply is malformed
        """
        ...


def fallback_decision(intent: Intent, context: MarketContext) -> Decision:
    """
    Rule-based decision used whenever the reasoning provider is unavailable.

    Starts from an approving verdict and then applies, in order:
    - gas above 50 gwei declines
    - amounts above 100 lower confidence and mark the risk medium
    - high network congestion declines, overriding the amount risk label

    Never raises.
    """
    should_execute = True
    reasoning = "Conditions are favorable for execution"
    confidence = 80
    risk_assessment = "low"

    if context.gas_price > GAS_PRICE_CEILING:
        should_execute = False
        reasoning = "Gas price too high for efficient execution"
        confidence = 90
        risk_assessment = "high - expensive gas fees"

    if intent.amount > LARGE_AMOUNT:
        confidence = max(confidence - 20, 50)
        risk_assessment = "medium - large transaction amount"

    if context.network_congestion == NetworkCongestion.HIGH:
        should_execute = False
        reasoning = "Network congestion too high, transaction may fail or be expensive"
        confidence = 85
        risk_assessment = "high - network congestion"

    return Decision(
        should_execute=should_execute,
        reasoning=reasoning,
        confidence=confidence,
        risk_assessment=risk_assessment,
    )


def parse_decision(content: str) -> Decision:
    """
    Parse a provider reply into a Decision.

    Accepts bare JSON or JSON wrapped in a markdown code fence.

    Raises:
        ProviderError: If the reply is not a valid decision
    """
    text = content.strip()
    fenced = _FENCE_PATTERN.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        data = json.loads(text)
    except ValueError as e:
        raise ProviderError(f"Reasoning provider reply is not JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProviderError("Reasoning provider reply is not a JSON object")

    try:
        return Decision.model_validate(data)
    except PydanticValidationError as e:
        raise ProviderError(f"Reasoning provider reply does not match decision shape: {e}") from e


class HttpReasoningProvider:
    """
    Reasoning provider speaking the OpenAI-compatible chat completions API.

    Args:
        endpoint: Base URL; requests go to ``<endpoint>/chat/completions``
        api_key: Bearer token
        model: Model name sent with each request
        temperature: Sampling temperature
        max_tokens: Reply length limit
        timeout: Request timeout in seconds
        client: Optional pre-configured httpx client (e.g. with a mock transport)
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        model: str = 'gaia-agent',
        temperature: float = 0.1,
        max_tokens: int = 500,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.endpoint = endpoint.rstrip('/')
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def decide(self, system_context: str, user_context: str) -> Decision:
        payload: Dict[str, Any] = {
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': system_context},
                {'role': 'user', 'content': user_context},
            ],
            'temperature': self.temperature,
            'max_tokens': self.max_tokens,
        }
        headers = {
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {self.api_key}',
        }

        try:
            response = self._client.post(
                f"{self.endpoint}/chat/completions",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"Reasoning provider request failed: {e.response.status_code} {e.response.reason_phrase}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Reasoning provider unreachable: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Reasoning provider returned invalid JSON: {e}") from e

        try:
            content = data['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("No response content from reasoning provider") from e

        if not content:
            raise ProviderError("No response content from reasoning provider")

        return parse_decision(content)


class DecisionEngine:
    """
    Produces an approve/decline verdict for a candidate action.

    The primary path consults the reasoning provider with the permission's
    constraints and the market snapshot. Any provider failure is logged and
    answered by ``fallback_decision``.
    """

    def __init__(
        self,
        permissions: PermissionStore,
        provider: Optional[ReasoningProvider] = None,
    ):
        self.permissions = permissions
        self.provider = provider

    def build_system_context(self, intent: Intent, context: MarketContext) -> str:
        """Render the permission constraints and market snapshot for the provider."""
        permission = self.permissions.get_permission(intent.permission_id)
        tracking = self.permissions.get_spend_tracking(intent.permission_id)

        if permission is not None:
            token = permission.token_address
            max_spend = str(permission.max_spend_amount)
            window = f"{permission.start_time.isoformat()} to {permission.end_time.isoformat()}"
            contracts = ', '.join(permission.allowed_contracts)
        else:
            token = max_spend = window = contracts = 'unknown'
        remaining = str(tracking.remaining_allowance) if tracking is not None else '0'

        return (
            "You are an AI agent managing cryptocurrency transactions within strict permission boundaries.\n"
            "\n"
            "PERMISSION CONSTRAINTS:\n"
            f"- Token: {token}\n"
            f"- Max Spend: {max_spend}\n"
            f"- Remaining: {remaining}\n"
            f"- Time Window: {window}\n"
            f"- Allowed Contracts: {contracts}\n"
            "\n"
            "CURRENT CONTEXT:\n"
            f"- Gas Price: {context.gas_price} gwei\n"
            f"- Token Price: ${context.token_price}\n"
            f"- Network Congestion: {context.network_congestion.value}\n"
            "\n"
            "You must NEVER exceed permission boundaries. Respond with JSON only:\n"
            "{\n"
            '  "shouldExecute": boolean,\n'
            '  "reasoning": "clear explanation of decision",\n'
            '  "confidence": number (0-100),\n'
            '  "riskAssessment": "low|medium|high with explanation"\n'
            "}"
        )

    def build_user_context(self, intent: Intent) -> str:
        return (
            "Should I execute this transaction?\n"
            f"Intent: {intent.description}\n"
            f"Amount: {intent.amount} tokens\n"
            f"Contract: {intent.contract_address}"
        )

    def decide(self, intent: Intent, context: MarketContext) -> Decision:
        """
        Decide whether to execute an intent under the given market context.

        Args:
            intent: Candidate action
            context: Market snapshot

        Returns:
            The provider's decision, or the fallback decision
        """
        if self.provider is None:
            decision = fallback_decision(intent, context)
            logger.debug("No reasoning provider configured, fallback decided %s", decision.should_execute)
            return decision

        try:
            decision = self.provider.decide(
                self.build_system_context(intent, context),
                self.build_user_context(intent),
            )
        except Exception as e:
            # ProviderError or anything a third-party provider raises
            logger.warning("Reasoning provider failed, using fallback decision: %s", e)
            return fallback_decision(intent, context)

        logger.info(
            "Reasoning provider decided execute=%s confidence=%s",
            decision.should_execute, decision.confidence,
        )
        return decision
