from datetime import datetime, timezone

import pytest
from google.genai.errors import ClientError, ServerError

from src.mamasaheli import chat_history, config, gemini_api, health
from src.mamasaheli.gemini_api import ChatContext, ChatTurn, GeminiServiceError, UserPreferences

PROFILE = {"name": "Priya", "age": 28, "weeksPregnant": 20, "preExistingConditions": "Thyroid"}


def collect(stream):
    async def _collect():
        return [chunk async for chunk in stream]
    return _collect()


def test_system_prompt_carries_context():
    context = ChatContext(
        latest_bp={"systolic": 118, "diastolic": 76, "recordedAt": "2026-06-10T08:00:00.000Z"},
        latest_sugar={"level": 92},
        upcoming_appointments=[{"date": "2026-07-01T09:00:00.000Z", "time": "09:00", "appointmentType": "ultra_sound"}],
        previous_concerns=["a" * 120, "b", "c", "d"],
    )
    prefs = UserPreferences(feeling="anxious", weeks_pregnant=21, specific_concerns="swollen feet")

    prompt = gemini_api.create_system_prompt(prefs, PROFILE, context)

    assert prompt.startswith(gemini_api.PERSONA)
    assert prompt.endswith(gemini_api.SAFETY_RULES)
    assert "- Name: Priya" in prompt
    assert "- Age: 28" in prompt
    assert "- Weeks Pregnant: 21" in prompt
    assert "- Pre-existing Conditions: Thyroid" in prompt
    assert "BP: 118/76 mmHg (Logged on Jun 10, 2026." in prompt
    assert "Blood Sugar: 92 mg/dL (unspecified) (Logged on unknown date." in prompt
    assert "No recent Weight reading available." in prompt
    assert "- ultra sound on Jul 1, 2026 at 09:00" in prompt
    assert '"a' not in prompt
    assert '- "d"' in prompt


def test_long_concerns_are_truncated():
    text = gemini_api.format_previous_concerns(["x" * 150])
    assert '"' + "x" * 100 + '..."' in text


def test_incomplete_reading_is_reported():
    text = gemini_api.format_reading_for_context({"systolic": 120}, "BP")
    assert text.startswith("Recent BP reading data is incomplete.")


def test_start_chat_opening_turns():
    turns = gemini_api.start_chat(UserPreferences(feeling="tired"), PROFILE, ChatContext())

    assert [t.role for t in turns] == ["system", "user", "assistant"]
    assert turns[1].text == "Hi, I'm Priya. I'm feeling tired at 20 weeks pregnant. What should I know or do right now?"
    assert turns[2].text.startswith("Hello Priya!")


def test_build_contents_maps_roles_and_drops_system():
    image = gemini_api.file_to_image_part(b"\x89PNG", "image/png")
    contents = gemini_api.build_contents(
        [ChatTurn("system", "rules"), ChatTurn("user", "look", [image]), ChatTurn("assistant", "I see")]
    )
    assert [c.role for c in contents] == ["user", "model"]
    assert len(contents[0].parts) == 2


@pytest.mark.parametrize(
    "data, mime_type",
    [(b"x", "application/pdf"), (b"", "image/png"), (b"x" * (20 * 1024 * 1024 + 1), "image/jpeg")],
)
def test_image_validation(data, mime_type):
    with pytest.raises(ValueError):
        gemini_api.file_to_image_part(data, mime_type)


def test_last_turn_must_be_from_user(run, fake_gemini):
    fake_gemini(text="hi")
    with pytest.raises(ValueError):
        run(gemini_api.send_message([ChatTurn("user", "hi"), ChatTurn("assistant", "hello")]))
    with pytest.raises(ValueError):
        run(gemini_api.send_message([]))


def test_send_message_uses_system_instruction(run, fake_gemini):
    models = fake_gemini(text="Stay hydrated.")
    turns = [ChatTurn("system", "be kind"), ChatTurn("user", "any tips?")]

    reply = run(gemini_api.send_message(turns))

    assert reply == "Stay hydrated."
    call = models.calls[0]
    assert call["model"] == "gemini-test"
    assert call["config"].system_instruction == "be kind"
    assert call["config"].temperature == 0.7
    assert [c.role for c in call["contents"]] == ["user"]


def test_empty_reply_is_an_error(run, fake_gemini):
    fake_gemini(text="")
    with pytest.raises(GeminiServiceError):
        run(gemini_api.send_message([ChatTurn("user", "hi")]))


def test_stream_yields_chunks(run, fake_gemini):
    fake_gemini(chunks=["Rest ", "", "well."])
    chunks = run(collect(gemini_api.send_message_stream([ChatTurn("user", "hi")])))
    assert chunks == ["Rest ", "well."]


@pytest.mark.parametrize(
    "error, expected",
    [
        (ClientError(429, {"error": {"code": 429, "message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}}), "quota"),
        (ClientError(400, {"error": {"code": 400, "message": "API key not valid", "status": "INVALID_ARGUMENT"}}), "Authentication"),
        (ServerError(503, {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}}), "temporarily unavailable"),
    ],
)
def test_sdk_errors_become_service_errors(run, fake_gemini, error, expected):
    fake_gemini(error=error)
    with pytest.raises(GeminiServiceError) as exc:
        run(gemini_api.send_message([ChatTurn("user", "hi")]))
    assert expected in str(exc.value)

    with pytest.raises(GeminiServiceError):
        run(collect(gemini_api.send_message_stream([ChatTurn("user", "hi")])))


def test_missing_model_name(run, fake_gemini, monkeypatch):
    fake_gemini(text="hi")
    monkeypatch.delenv("AI_AGENT")
    config.reset_settings()
    with pytest.raises(GeminiServiceError) as exc:
        run(gemini_api.send_message([ChatTurn("user", "hi")]))
    assert "AI_AGENT environment is not set" in str(exc.value)


def test_invalid_api_key_format(run, monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "sk-not-gemini")
    config.reset_settings()
    with pytest.raises(ValueError):
        run(gemini_api.get_async_client())


def test_upcoming_only():
    now = datetime(2026, 7, 5, 15, 0, tzinfo=timezone.utc)
    appointments = [
        {"date": "2026-07-20T09:00:00.000Z"},
        {"date": "2026-07-05T09:00:00.000Z"},
        {"date": "2026-07-01T09:00:00.000Z"},
        {"date": "garbage"},
        {"date": "2026-07-06T09:00:00.000Z"},
        {"date": "2026-08-01T09:00:00.000Z"},
    ]
    upcoming = gemini_api.upcoming_only(appointments, now=now)
    assert [a["date"][:10] for a in upcoming] == ["2026-07-05", "2026-07-06", "2026-07-20"]


def test_chat_context_is_loaded_from_user_data(run):
    async def scenario():
        await health.create_health_reading(health.BLOOD_PRESSURE, "u1", {"systolic": 115, "diastolic": 75})
        await health.create_appointment("u1", {"date": "2099-05-01T09:00:00.000Z", "time": "09:00"})
        await chat_history.save_chat_message("u1", "user", "Is coffee okay?", "s1")
        return await chat_history.load_chat_context("u1")

    context = run(scenario())
    assert context.latest_bp["systolic"] == 115
    assert context.latest_sugar is None
    assert [a["time"] for a in context.upcoming_appointments] == ["09:00"]
    assert context.previous_concerns == ["Is coffee okay?"]


def test_client_is_created_once(run):
    first = run(gemini_api.get_async_client())
    second = run(gemini_api.get_async_client())
    assert first is second
    assert gemini_api._async_client is first
