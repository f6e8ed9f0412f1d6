import pytest

from evalgrid.environment import TestEnvironment
from evalgrid.errors import ProviderError
from evalgrid.models import FilePart, PipelinePrompt, TestOutput

from fakes import FakeProvider, prompt_text


@pytest.mark.asyncio
async def test_stream_yields_text_then_one_output():
    env = TestEnvironment(FakeProvider(reply="Hello"), "Say {{ word }}")

    items = [item async for item in env.stream({"word": "hi"})]

    assert items[:-1] == ["He", "llo"]
    final = items[-1]
    assert isinstance(final, TestOutput)
    assert final.output == "Hello"
    assert final.raw_output == {"text": "Hello"}
    assert final.error is None
    assert final.latency_ms >= 0
    assert final.token_usage.total_tokens == 3


@pytest.mark.asyncio
async def test_run_reports_growing_partials():
    partials = []
    env = TestEnvironment(FakeProvider(reply="abcd"), "x")

    output = await env.run({}, on_partial=partials.append)

    assert partials == ["ab", "abcd"]
    assert output.output == "abcd"


@pytest.mark.asyncio
async def test_provider_failure_becomes_error_output():
    def reply(conversation):
        raise ProviderError("Failed to run model: overloaded")

    output = await TestEnvironment(FakeProvider(reply=reply), "x").run({})

    assert output.error == "Failed to run model: overloaded"
    assert output.output is None
    assert output.latency_ms is not None


@pytest.mark.asyncio
async def test_unsupported_file_becomes_error_output():
    model = FakeProvider(mime_types=["image/*"])
    pdf = FilePart(name="doc.pdf", mime_type="application/pdf", data=b"%PDF")

    output = await TestEnvironment(model, "Read {{ doc }}").run({"doc": pdf})

    assert "application/pdf" in output.error
    assert model.calls == []


@pytest.mark.asyncio
async def test_pipeline_prompt_records_history():
    prompt = PipelinePrompt.model_validate(
        {"$pipeline": [{"prompt": "draft {{ topic }}", "outputAs": "d"}, {"deps": ["d"], "prompt": "polish {{ d }}"}]}
    )
    env = TestEnvironment(FakeProvider(reply=prompt_text), prompt)

    output = await env.run({"topic": "rain"})

    assert output.output == "polish draft rain"
    assert [h.output for h in output.history] == ["draft rain", "polish draft rain"]
    assert output.token_usage.total_tokens == 6


@pytest.mark.asyncio
async def test_pipeline_limit_becomes_error_output():
    prompt = PipelinePrompt.model_validate(
        {"$pipeline": [{"prompt": "a", "outputAs": "x"}, {"deps": ["x"], "prompt": "{{ x }}", "outputAs": "x"}]}
    )

    output = await TestEnvironment(FakeProvider(reply="loop"), prompt, max_steps=5).run({})

    assert "max_steps=5" in output.error
