import asyncio
import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from conftest import FakeProber, FakeRedis
from trustpipe.adapters.market_data import CachedMarketData, HttpMarketDataService
from trustpipe.adapters.oracle import (
    OpenAIOracle,
    ReasoningAdapter,
    SalaryComparison,
    parse_answer,
    strip_fences,
)
from trustpipe.adapters.probes import HttpProber, probe_social_profiles, probe_website, website_url
from trustpipe.engines.cache import VerificationCache
from trustpipe.errors import ExternalServiceRejectedError, TransientExternalError


class ScriptedOracle:
    def __init__(self, answer: str):
        self.answer = answer

    async def generate(self, prompt: str) -> str:
        return self.answer


def test_strip_fences() -> None:
    assert strip_fences('```json\n{"passed": true}\n```') == '{"passed": true}'
    assert strip_fences('  {"passed": true} ') == '{"passed": true}'


def test_malformed_oracle_answer_is_transient() -> None:
    with pytest.raises(TransientExternalError, match="malformed JSON"):
        parse_answer("Sure! The salary looks fine.", SalaryComparison)
    with pytest.raises(TransientExternalError, match="failed validation"):
        parse_answer('{"confidence": 0.5}', SalaryComparison)


def test_salary_comparison_accepts_camel_case_and_clamps_confidence() -> None:
    adapter = ReasoningAdapter(ScriptedOracle(
        '```json\n{"isValid": true, "confidence": 3.5, "comparison": "at median", "reasons": "fits range"}\n```'
    ))

    answer = asyncio.run(adapter.compare_salary({"amount": 95000}, {"min_salary": 70000}))

    assert answer.is_valid is True
    assert answer.confidence == 1.0
    assert answer.comparison == {"summary": "at median"}
    assert answer.reasons == ["fits range"]


def test_business_registration_check_is_typed() -> None:
    adapter = ReasoningAdapter(ScriptedOracle('{"passed": false, "confidence": -1, "details": "No filing"}'))

    outcome = asyncio.run(adapter.check_business_registration({"name": "Acme"}))

    assert outcome.model_dump() == {"passed": False, "confidence": 0.0, "details": "No filing"}


def _openai_client_raising(error: Exception):
    async def create(**kwargs):
        raise error

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def _status_error(cls, status: int):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return cls("failed", response=httpx.Response(status, request=request), body=None)


def test_openai_server_errors_are_transient() -> None:
    oracle = OpenAIOracle(api_key="sk-test", model="gpt-4o-mini", timeout=5)
    oracle._client = _openai_client_raising(_status_error(openai.InternalServerError, 503))

    with pytest.raises(TransientExternalError):
        asyncio.run(oracle.generate("prompt"))


def test_openai_client_errors_are_rejections() -> None:
    oracle = OpenAIOracle(api_key="sk-test", model="gpt-4o-mini", timeout=5)
    oracle._client = _openai_client_raising(_status_error(openai.AuthenticationError, 401))

    with pytest.raises(ExternalServiceRejectedError):
        asyncio.run(oracle.generate("prompt"))


def test_openai_answer_text_is_returned() -> None:
    oracle = OpenAIOracle(api_key="sk-test", model="gpt-4o-mini", timeout=5)

    async def create(**kwargs):
        assert kwargs["response_format"] == {"type": "json_object"}
        message = SimpleNamespace(content='{"passed": true}')
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    oracle._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    assert asyncio.run(oracle.generate("prompt")) == '{"passed": true}'


def test_market_data_live_answer() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["title"] == "Backend Engineer"
        return httpx.Response(200, json={"min": 80000, "max": 130000, "median": 105000, "currency": "EUR", "source": "glassdoor"})

    service = HttpMarketDataService(base_url="https://market.test/salary", transport=httpx.MockTransport(handler))

    stats = asyncio.run(service.get_salary_stats("Backend Engineer", "Berlin", "senior"))

    assert stats == {
        "min_salary": 80000,
        "max_salary": 130000,
        "median_salary": 105000,
        "currency": "EUR",
        "data_source": "glassdoor",
        "confidence": 0.9,
    }


def test_market_data_falls_back_when_provider_fails() -> None:
    service = HttpMarketDataService(
        base_url="https://market.test/salary",
        transport=httpx.MockTransport(lambda request: httpx.Response(502)),
    )

    stats = asyncio.run(service.get_salary_stats("Backend Engineer", None, None))

    assert (stats["min_salary"], stats["max_salary"], stats["median_salary"]) == (70000, 120000, 95000)
    assert stats["currency"] == "USD"
    assert stats["confidence"] == 0.5


def test_market_data_is_cached_by_title_location_experience() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"min": 1, "max": 2, "median": 1.5})

    redis = FakeRedis()
    market = CachedMarketData(
        HttpMarketDataService(base_url="https://market.test/salary", transport=httpx.MockTransport(handler)),
        VerificationCache(redis),
    )

    async def twice():
        first = await market.get_salary_stats("Engineer", "Remote", "mid")
        second = await market.get_salary_stats("Engineer", "Remote", "mid")
        return first, second

    first, second = asyncio.run(twice())

    assert first == second
    assert len(calls) == 1
    assert redis.ttls["market_salary:Engineer:Remote:mid"] == 86400
    assert json.loads(redis.store["market_salary:Engineer:Remote:mid"])["confidence"] == 0.9


def test_website_url_prefers_domain() -> None:
    assert website_url("acme.example", "https://www.acme.example") == "https://acme.example"
    assert website_url(None, "https://www.acme.example") == "https://www.acme.example"
    assert website_url(None, None) is None


def test_probes_report_reachability_as_checks() -> None:
    prober = FakeProber({"https://acme.example", "https://x.com/acme"})

    website = asyncio.run(probe_website(prober, "acme.example", None))
    social = asyncio.run(probe_social_profiles(prober, ["https://x.com/acme", "https://linkedin.com/acme"]))
    nothing = asyncio.run(probe_social_profiles(prober, []))

    assert website["passed"] is True and website["confidence"] == 0.8
    assert social == {"passed": True, "confidence": 0.5, "details": "Valid profiles: 1/2"}
    assert nothing["passed"] is False and nothing["confidence"] == 0.0


def test_http_prober_treats_network_errors_as_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.example":
            raise httpx.ConnectError("refused", request=request)
        if request.url.host == "gone.example":
            return httpx.Response(404)
        return httpx.Response(200, text="<html></html>")

    prober = HttpProber(transport=httpx.MockTransport(handler))

    async def probe_all():
        try:
            return [
                await prober.is_reachable("https://up.example"),
                await prober.is_reachable("https://down.example"),
                await prober.is_reachable("https://gone.example"),
            ]
        finally:
            await prober.close()

    assert asyncio.run(probe_all()) == [True, False, False]
