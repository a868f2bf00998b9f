import pytest

from examlab.core.interfaces import LLMTimeoutError
from examlab.core.pipeline import (
    ANSWER_STEP, SUBJECT_STEP, SUBTOPIC_STEP, TOPIC_STEP, StageFailure, StagePipeline
)
from examlab.models.profile import ProfileMetadata

from conftest import FakeChatClient


class TestStagePipeline:
    """Тесты четырехэтапного конвейера"""

    def test_full_pipeline(self, fake_client, catalog, profile, single_question):
        context = StagePipeline(fake_client, catalog, profile).execute(single_question)

        assert [step.id for step in context.steps] == [SUBJECT_STEP, TOPIC_STEP, SUBTOPIC_STEP, ANSWER_STEP]
        assert [call["schema"] for call in fake_client.calls] == [
            "topology-subject", "topology-topic", "topology-subtopic", "answer"
        ]
        assert (context.subject_id, context.topic_id, context.subtopic_id) == ("math", "algebra", "linear-equations")
        assert context.answer.answer == "B"
        assert context.latency_ms == 400.0
        assert context.usage.total_tokens == 60
        assert context.prediction.subject_confidence == 0.9

    def test_each_stage_sees_previous_result(self, fake_client, catalog, profile, single_question):
        """Промпт темы строится по выбранному предмету, промпт ответа содержит классификацию"""
        StagePipeline(fake_client, catalog, profile).execute(single_question)
        topic_prompt = fake_client.calls[1]["messages"][-1]["content"]
        answer_prompt = fake_client.calls[3]["messages"][-1]["content"]
        assert "Selected subject: math (Mathematics)" in topic_prompt
        assert '"subtopicId": "linear-equations"' in answer_prompt

    def test_system_prompt_and_preamble(self, fake_client, catalog, profile, single_question):
        StagePipeline(fake_client, catalog, profile).execute(single_question)
        messages = fake_client.calls[0]["messages"]
        assert messages[0]["role"] == "system"
        assert messages[0]["content"] == profile.default_system_prompt
        assert messages[1]["content"].startswith(profile.step(SUBJECT_STEP).prompt_template)

    def test_disabled_step_is_skipped(self, fake_client, catalog, profile, single_question):
        steps = [step.model_copy(update={"enabled": step.id != TOPIC_STEP}) for step in profile.benchmark_steps]
        profile = profile.model_copy(update={"benchmark_steps": steps})

        context = StagePipeline(fake_client, catalog, profile).execute(single_question)

        assert len(fake_client.calls) == 3
        skipped = context.steps[1]
        assert skipped.id == TOPIC_STEP
        assert skipped.notes == "Step disabled in profile; skipped."
        assert context.topic_id is None

    def test_answer_step_cannot_be_disabled(self, fake_client, catalog, profile, single_question):
        steps = [step.model_copy(update={"enabled": False}) for step in profile.benchmark_steps]
        profile = profile.model_copy(update={"benchmark_steps": steps})
        context = StagePipeline(fake_client, catalog, profile).execute(single_question)
        assert [call["schema"] for call in fake_client.calls] == ["answer"]
        assert context.answer.answer == "B"

    def test_parse_failure_keeps_partial_context(self, catalog, profile, single_question):
        """Ошибка разбора подтемы сохраняет сырые ответы предмета и темы"""
        client = FakeChatClient(replies={"topology-subtopic": ["I am not sure, maybe linear?"]})
        with pytest.raises(StageFailure) as exc_info:
            StagePipeline(client, catalog, profile).execute(single_question)

        failure = exc_info.value
        assert failure.stage == SUBTOPIC_STEP
        raw = failure.context.raw_responses()
        assert set(raw) == {SUBJECT_STEP, TOPIC_STEP, SUBTOPIC_STEP}
        assert raw[SUBTOPIC_STEP] == "I am not sure, maybe linear?"
        assert failure.context.subject_id == "math"
        assert failure.context.steps[-1].notes is not None
        assert len(client.calls) == 3

    def test_transport_failure(self, catalog, profile, single_question):
        client = FakeChatClient(replies={"answer": [LLMTimeoutError("Request timed out after 120.0s")]})
        with pytest.raises(StageFailure) as exc_info:
            StagePipeline(client, catalog, profile).execute(single_question)
        assert exc_info.value.stage == ANSWER_STEP
        assert isinstance(exc_info.value.cause, LLMTimeoutError)
        assert exc_info.value.context.steps[-1].notes == "Request timed out after 120.0s"

    def test_fallback_switches_to_plain_mode(self, catalog, profile, single_question):
        """После отказа от структурированного вывода остальные этапы идут обычным текстом"""
        client = FakeChatClient(reject_structured=True)
        context = StagePipeline(client, catalog, profile).execute(single_question)
        assert [call["prefer_structured"] for call in client.calls] == [True, False, False, False]
        assert context.fallback_used is True
        assert context.steps[0].fallback_used is True

    def test_profile_without_structured_support(self, fake_client, catalog, profile, single_question):
        profile = profile.model_copy(update={"metadata": ProfileMetadata(supports_structured_output=False)})
        StagePipeline(fake_client, catalog, profile).execute(single_question)
        assert not any(call["prefer_structured"] for call in fake_client.calls)
