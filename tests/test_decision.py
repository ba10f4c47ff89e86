"""
Tests for the decision engine and reasoning providers.
"""

import json
from decimal import Decimal

import httpx
import pytest

from agent_autopilot.decision import (
    DecisionEngine,
    HttpReasoningProvider,
    fallback_decision,
    parse_decision,
)
from agent_autopilot.errors import ProviderError
from agent_autopilot.types import Decision, Intent, MarketContext, NetworkCongestion

from conftest import ROUTER, TOKEN

ENDPOINT = "https://llm.example.com/v1"


def _intent(amount="10", permission_id="perm_1"):
    return Intent(
        description="Swap USDC for ETH",
        token_address=TOKEN,
        amount=amount,
        contract_address=ROUTER,
        permission_id=permission_id,
    )


def _context(gas="20", congestion=NetworkCongestion.LOW):
    return MarketContext(gas_price=gas, token_price="2000", network_congestion=congestion)


def _completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _provider(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpReasoningProvider(ENDPOINT, "sk-test", client=client)


APPROVE = json.dumps({
    "shouldExecute": True,
    "reasoning": "Gas is cheap",
    "confidence": 92,
    "riskAssessment": "low",
})


class TestFallbackDecision:
    """Tests for the rule-based fallback."""

    def test_favorable_conditions(self):
        decision = fallback_decision(_intent(), _context())

        assert decision.should_execute is True
        assert decision.reasoning == "Conditions are favorable for execution"
        assert decision.confidence == 80
        assert decision.risk_assessment == "low"

    def test_high_gas_declines(self):
        decision = fallback_decision(_intent(), _context(gas="60"))

        assert decision.should_execute is False
        assert decision.reasoning == "Gas price too high for efficient execution"
        assert decision.confidence == 90
        assert decision.risk_assessment.startswith("high")

    def test_gas_at_ceiling_is_fine(self):
        assert fallback_decision(_intent(), _context(gas="50")).should_execute is True

    def test_large_amount_lowers_confidence(self):
        decision = fallback_decision(_intent(amount="150"), _context())

        assert decision.should_execute is True
        assert decision.confidence == 60
        assert decision.risk_assessment == "medium - large transaction amount"

    def test_large_amount_with_high_gas(self):
        decision = fallback_decision(_intent(amount="150"), _context(gas="80"))

        assert decision.should_execute is False
        assert decision.confidence == 70
        assert decision.risk_assessment == "medium - large transaction amount"

    def test_high_congestion_overrides(self):
        decision = fallback_decision(
            _intent(amount="150"), _context(congestion=NetworkCongestion.HIGH)
        )

        assert decision.should_execute is False
        assert decision.confidence == 85
        assert decision.risk_assessment == "high - network congestion"
        assert "congestion" in decision.reasoning

    def test_medium_congestion_is_fine(self):
        assert fallback_decision(_intent(), _context(congestion=NetworkCongestion.MEDIUM)).should_execute


class TestParseDecision:
    """Tests for parse_decision."""

    def test_bare_json(self):
        decision = parse_decision(APPROVE)

        assert decision.should_execute is True
        assert decision.confidence == 92
        assert decision.risk_assessment == "low"

    def test_fenced_json(self):
        decision = parse_decision(f"```json\n{APPROVE}\n```")
        assert decision.reasoning == "Gas is cheap"

    def test_confidence_clamped(self):
        decision = parse_decision('{"shouldExecute": false, "confidence": 250}')
        assert decision.confidence == 100

    def test_not_json(self):
        with pytest.raises(ProviderError, match="not JSON"):
            parse_decision("I think you should go ahead")

    def test_not_an_object(self):
        with pytest.raises(ProviderError, match="not a JSON object"):
            parse_decision("[1, 2]")

    def test_missing_verdict(self):
        with pytest.raises(ProviderError, match="decision shape"):
            parse_decision('{"reasoning": "maybe"}')


class TestHttpReasoningProvider:
    """Tests for HttpReasoningProvider against a mock transport."""

    def test_successful_request(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_completion(APPROVE))

        decision = _provider(handler).decide("system prompt", "user prompt")

        assert decision.should_execute is True
        assert seen["url"] == f"{ENDPOINT}/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "gaia-agent"
        assert seen["body"]["temperature"] == 0.1
        assert seen["body"]["max_tokens"] == 500
        assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]
        assert seen["body"]["messages"][1]["content"] == "user prompt"

    def test_trailing_slash_in_endpoint(self):
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(200, json=_completion(APPROVE))

        client = httpx.Client(transport=httpx.MockTransport(handler))
        HttpReasoningProvider(ENDPOINT + "/", "sk-test", client=client).decide("s", "u")

        assert urls == [f"{ENDPOINT}/chat/completions"]

    def test_fenced_reply(self):
        provider = _provider(lambda request: httpx.Response(200, json=_completion(f"```\n{APPROVE}\n```")))
        assert provider.decide("s", "u").confidence == 92

    def test_http_error_status(self):
        provider = _provider(lambda request: httpx.Response(500))

        with pytest.raises(ProviderError, match="500"):
            provider.decide("s", "u")

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(ProviderError, match="unreachable"):
            _provider(handler).decide("s", "u")

    def test_invalid_json_body(self):
        provider = _provider(lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(ProviderError, match="invalid JSON"):
            provider.decide("s", "u")

    def test_empty_choices(self):
        provider = _provider(lambda request: httpx.Response(200, json={"choices": []}))

        with pytest.raises(ProviderError, match="No response content"):
            provider.decide("s", "u")

    def test_empty_content(self):
        provider = _provider(lambda request: httpx.Response(200, json=_completion("")))

        with pytest.raises(ProviderError, match="No response content"):
            provider.decide("s", "u")


class StubProvider:
    def __init__(self, decision=None, error=None):
        self.decision = decision
        self.error = error
        self.prompts = []

    def decide(self, system_context, user_context):
        self.prompts.append((system_context, user_context))
        if self.error is not None:
            raise self.error
        return self.decision


class TestDecisionEngine:
    """Tests for DecisionEngine."""

    def test_fallback_without_provider(self, store):
        engine = DecisionEngine(store)
        assert engine.decide(_intent(), _context(gas="60")).should_execute is False

    def test_uses_provider(self, store, permission):
        verdict = Decision(should_execute=False, reasoning="Price looks off", confidence=70)
        provider = StubProvider(decision=verdict)
        engine = DecisionEngine(store, provider)

        decision = engine.decide(_intent(permission_id=permission.id), _context())

        assert decision.reasoning == "Price looks off"
        assert len(provider.prompts) == 1

    def test_provider_error_falls_back(self, store, permission):
        engine = DecisionEngine(store, StubProvider(error=ProviderError("timeout")))

        decision = engine.decide(_intent(permission_id=permission.id), _context())

        assert decision.should_execute is True
        assert decision.reasoning == "Conditions are favorable for execution"

    def test_unexpected_provider_error_falls_back(self, store, permission):
        engine = DecisionEngine(store, StubProvider(error=KeyError("choices")))

        decision = engine.decide(_intent(permission_id=permission.id), _context(gas="75"))

        assert decision.should_execute is False
        assert decision.reasoning == "Gas price too high for efficient execution"

    def test_http_provider_failure_falls_back(self, store, permission):
        engine = DecisionEngine(store, _provider(lambda request: httpx.Response(503)))

        decision = engine.decide(_intent(permission_id=permission.id), _context())
        assert decision.confidence == 80

    def test_system_context_contents(self, store, permission):
        store.record_spend(permission.id, "25", "0x1")
        engine = DecisionEngine(store)

        prompt = engine.build_system_context(
            _intent(permission_id=permission.id), _context(gas="33")
        )

        assert f"Token: {TOKEN}" in prompt
        assert "Max Spend: 100" in prompt
        assert "Remaining: 75" in prompt
        assert ROUTER in prompt
        assert "Gas Price: 33 gwei" in prompt
        assert "Network Congestion: low" in prompt
        assert '"shouldExecute": boolean' in prompt

    def test_system_context_unknown_permission(self, store):
        prompt = DecisionEngine(store).build_system_context(_intent(permission_id="perm_missing"), _context())

        assert "Token: unknown" in prompt
        assert "Remaining: 0" in prompt

    def test_user_context(self, store):
        prompt = DecisionEngine(store).build_user_context(_intent(amount=Decimal("12.5")))

        assert "Intent: Swap USDC for ETH" in prompt
        assert "Amount: 12.5 tokens" in prompt
        assert f"Contract: {ROUTER}" in prompt
