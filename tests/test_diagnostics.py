from datetime import datetime
from unittest.mock import MagicMock

from examlab.core.diagnostics import DiagnosticsRunner, apply_diagnostics_result
from examlab.core.interfaces import LLMConnectionError
from examlab.models.profile import CompatibilityStatus, DiagnosticsLevel, DiagnosticsStatus, ProfileMetadata

from conftest import FakeChatClient, FakeClock

READY = '{"answer": "ready"}'


def make_runner(client, catalog):
    return DiagnosticsRunner(lambda profile: client, catalog, clock=FakeClock())


class TestHandshake:
    """Тесты уровня HANDSHAKE"""

    def test_handshake_passes(self, catalog, profile):
        client = FakeChatClient(replies={"answer": [READY]})
        result = make_runner(client, catalog).run(profile, DiagnosticsLevel.HANDSHAKE)

        assert result.status == DiagnosticsStatus.PASS
        assert result.level == DiagnosticsLevel.HANDSHAKE
        assert result.profile_id == profile.id
        assert result.fallback_applied is False
        assert result.metadata["supports_structured_output"] is True
        assert result.metadata["available_models"] == ["test-model"]
        assert client.calls[0]["schema"] == "answer"
        assert client.calls[0]["temperature"] == 0
        assert result.completed_at > result.started_at

    def test_handshake_with_fallback(self, catalog, profile):
        client = FakeChatClient(replies={"answer": [READY]}, reject_structured=True)
        result = make_runner(client, catalog).handshake(profile)
        assert result.status == DiagnosticsStatus.PASS
        assert result.fallback_applied is True
        assert result.metadata["supports_structured_output"] is False
        assert any(entry.severity == "warn" for entry in result.logs)

    def test_unlisted_model_is_a_warning(self, catalog, profile):
        client = FakeChatClient(replies={"answer": [READY]}, models=["other-model"])
        result = make_runner(client, catalog).handshake(profile)
        assert result.status == DiagnosticsStatus.PASS
        assert any("not listed" in entry.message for entry in result.logs)

    def test_unreachable_endpoint(self, catalog, profile):
        client = FakeChatClient()
        client.list_models = MagicMock(side_effect=LLMConnectionError("refused"))
        result = make_runner(client, catalog).handshake(profile)
        assert result.status == DiagnosticsStatus.FAIL
        assert "refused" in result.summary
        assert client.calls == []

    def test_wrong_echo(self, catalog, profile):
        client = FakeChatClient(replies={"answer": ['{"answer": "hello"}']})
        result = make_runner(client, catalog).handshake(profile)
        assert result.status == DiagnosticsStatus.FAIL

    def test_unparseable_echo(self, catalog, profile):
        client = FakeChatClient(replies={"answer": ["ready"]})
        result = make_runner(client, catalog).handshake(profile)
        assert result.status == DiagnosticsStatus.FAIL
        assert result.metadata["raw_response"] == "ready"


class TestReadiness:
    """Тесты уровня READINESS: полный конвейер на тестовом вопросе"""

    def test_readiness_passes(self, fake_client, catalog, profile):
        result = make_runner(fake_client, catalog).run(profile, DiagnosticsLevel.READINESS)

        assert result.status == DiagnosticsStatus.PASS
        assert len(fake_client.calls) == 4
        assert result.metadata["topology"] == {
            "subject_id": "math", "topic_id": "algebra", "subtopic_id": "linear-equations",
        }
        assert result.metadata["resolved_option"] == 1
        assert result.metadata["answer_correct"] is True
        assert set(result.metadata["stages"]) == {
            "topology-subject", "topology-topic", "topology-subtopic", "answer",
        }

    def test_wrong_answer_still_passes(self, catalog, profile):
        """Проверяется протокол, а не правильность ответа"""
        client = FakeChatClient(replies={"answer": ['{"answer": "D"}']})
        result = make_runner(client, catalog).readiness(profile)
        assert result.status == DiagnosticsStatus.PASS
        assert result.metadata["answer_correct"] is False

    def test_answer_of_wrong_shape_fails(self, catalog, profile):
        client = FakeChatClient(replies={"answer": ['{"answer": "seventeen"}']})
        result = make_runner(client, catalog).readiness(profile)
        assert result.status == DiagnosticsStatus.FAIL
        assert result.metadata["resolved_option"] is None

    def test_subtopic_parse_failure_keeps_earlier_responses(self, catalog, profile):
        """Сбой разбора подтемы: ответы предмета и темы остаются в метаданных"""
        client = FakeChatClient(replies={"topology-subtopic": ["no json here"]})
        result = make_runner(client, catalog).readiness(profile)

        assert result.status == DiagnosticsStatus.FAIL
        assert result.metadata["failed_stage"] == "topology-subtopic"
        stages = result.metadata["stages"]
        assert stages["topology-subject"]["response_text"] == '{"subjectId": "math", "confidence": 0.9}'
        assert stages["topology-topic"]["response_text"] == '{"topicId": "algebra", "confidence": 0.8}'
        assert stages["topology-subtopic"]["response_text"] == "no json here"
        assert "answer" not in stages
        assert len(client.calls) == 3

    def test_disabled_steps_are_forced_on(self, fake_client, catalog, profile):
        steps = [step.model_copy(update={"enabled": False}) for step in profile.benchmark_steps]
        profile = profile.model_copy(update={"benchmark_steps": steps})
        result = make_runner(fake_client, catalog).readiness(profile)
        assert result.status == DiagnosticsStatus.PASS
        assert len(fake_client.calls) == 4

    def test_plain_profile_does_not_report_structured_support(self, fake_client, catalog, profile):
        profile = profile.model_copy(update={"metadata": ProfileMetadata(supports_structured_output=False)})
        result = make_runner(fake_client, catalog).readiness(profile)
        assert "supports_structured_output" not in result.metadata


class TestApplyDiagnosticsResult:
    """Тесты применения результата диагностики к профилю"""

    def test_handshake_updates_metadata(self, catalog, profile):
        client = FakeChatClient(replies={"answer": [READY]}, reject_structured=True)
        result = make_runner(client, catalog).handshake(profile)
        now = datetime(2026, 2, 1)

        updated = apply_diagnostics_result(profile, result, now)

        assert updated is not profile
        assert profile.diagnostics == []
        assert updated.diagnostics[-1].id == result.id
        assert updated.metadata.supports_structured_output is False
        assert updated.metadata.last_handshake_at == result.completed_at
        assert updated.metadata.compatibility_status == CompatibilityStatus.UNKNOWN
        assert updated.updated_at == now

    def test_readiness_marks_compatibility(self, fake_client, catalog, profile):
        passed = make_runner(fake_client, catalog).readiness(profile)
        updated = apply_diagnostics_result(profile, passed)
        assert updated.metadata.compatibility_status == CompatibilityStatus.COMPATIBLE
        assert updated.last_diagnostic(DiagnosticsLevel.READINESS).status == DiagnosticsStatus.PASS

        failing = FakeChatClient(replies={"answer": ["garbage"]})
        failed = make_runner(failing, catalog).readiness(updated)
        updated = apply_diagnostics_result(updated, failed)
        assert updated.metadata.compatibility_status == CompatibilityStatus.INCOMPATIBLE
        assert len(updated.diagnostics) == 2

    def test_failed_handshake_marks_incompatible(self, catalog, profile):
        client = FakeChatClient(replies={"answer": ['{"answer": "nope"}']})
        result = make_runner(client, catalog).handshake(profile)
        updated = apply_diagnostics_result(profile, result)
        assert updated.metadata.compatibility_status == CompatibilityStatus.INCOMPATIBLE
