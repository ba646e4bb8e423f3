"""
Tests for request creation, recommendations and feedback.
"""

import json

import pytest

from matchbot.telegram_bot import handlers, matching_handlers
from matchbot.telegram_bot.common import LOGIN_REQUIRED_MESSAGE, SESSION_EXPIRED_MESSAGE

from conftest import make_update


def login(runtime, user_id="5"):
    return runtime.sessions.save_user_jwt("42", "abc", user_id=user_id)


def callback_rows(markup):
    return [[button.callback_data for button in row] for row in markup.inline_keyboard]


class TestFormatting:
    def test_match_message(self):
        text = matching_handlers.format_match_message(
            {"type": "mentor", "city": "Berlin", "similarity": 0.875, "createdAt": "2024-03-01T10:20:30"}
        )
        assert text.splitlines() == [
            "🔎 Рекомендация:",
            "• Тип: mentor",
            "• Город/страна: Berlin, —",
            "• Статус: —",
            "• Похожесть: 87.5%",
            "• Создано: 01.03.2024, 10:20:30",
        ]

    def test_request_summary_skips_empty_fields(self):
        assert matching_handlers.format_request_summary({"title": "Ментор", "city": "Berlin"}) == "• Ментор\nГород: Berlin"
        assert matching_handlers.format_request_summary({}) == "• Запрос"

    def test_owner_id_lookup(self):
        assert matching_handlers.extract_owner_id({"ownerId": 6}) == 6
        assert matching_handlers.extract_owner_id({"owner": {"id": 7}}) == 7
        assert matching_handlers.extract_owner_id({"request": {"owner": {"id": 8}}}) == 8
        assert matching_handlers.extract_owner_id({}) is None

    def test_callback_data(self):
        assert matching_handlers.feedback_callback("like", {"id": 1}, 3) == "feedback:like:1:3"
        assert matching_handlers.feedback_callback("dislike", {}, None) == "feedback:dislike:null:null"
        assert matching_handlers.contact_author_callback("3", 6) == "contact_author:3:6"
        assert matching_handlers.contact_author_callback(0, 6) == "contact_author:null:6"

    def test_feedback_payload(self):
        payload = matching_handlers.build_feedback_payload({"backend_user_id": "5"}, "1", "null", -1, reason_code="spam")
        assert payload == {
            "userId": 5,
            "matchId": 1,
            "targetRequestId": None,
            "relevanceScore": -1,
            "reasonCode": "spam",
            "comment": None,
            "mainIssue": None,
        }


class TestCreateRequest:
    @pytest.mark.asyncio
    async def test_menu_asks_for_text(self, runtime, context):
        login(runtime)
        update, chat = make_update(callback_data="menu:create")

        await handlers.handle_callback_query(update, context)

        assert runtime.sessions.get("42")["state"] == "create:rawText"
        assert chat.replies == [(matching_handlers.CREATE_REQUEST_PROMPT, None)]

    @pytest.mark.asyncio
    async def test_text_creates_request(self, runtime, context, backend):
        login(runtime)
        backend.routes[("POST", "/api/requests")] = (201, {"id": 3, "status": "active"})
        await handlers.handle_callback_query(make_update(callback_data="menu:create")[0], context)
        update, chat = make_update(text=" Ищу ментора по Symfony ")

        await handlers.handle_text_message(update, context)

        request = backend.requests[-1]
        assert request.headers["authorization"] == "Bearer abc"
        assert json.loads(request.content)["rawText"] == "Ищу ментора по Symfony"
        text, markup = chat.replies[0]
        assert text.startswith("Готово! Ваш запрос создан 🎉\nID: 3\nГород: не указан\nСтатус: active")
        assert markup is not None
        assert runtime.sessions.get("42")["state"] is None

    @pytest.mark.asyncio
    async def test_rejected_request_shows_reason(self, runtime, context, backend):
        login(runtime)
        backend.routes[("POST", "/api/requests")] = (400, {"message": "too short"})
        await handlers.handle_callback_query(make_update(callback_data="menu:create")[0], context)
        update, chat = make_update(text="hi")

        await handlers.handle_text_message(update, context)

        assert chat.replies[0][0].startswith("Не удалось создать запрос: too short")
        assert runtime.sessions.get("42")["state"] is None

    @pytest.mark.asyncio
    async def test_expired_session_logs_out(self, runtime, context, backend):
        login(runtime)
        backend.routes[("POST", "/api/requests")] = (401, {"message": "expired"})
        await handlers.handle_callback_query(make_update(callback_data="menu:create")[0], context)
        update, chat = make_update(text="Ищу ментора")

        await handlers.handle_text_message(update, context)

        assert runtime.sessions.restore_login("42") is None
        assert chat.replies == [("Ваша сессия истекла. Пожалуйста, войдите заново.", None)]

    @pytest.mark.asyncio
    async def test_requires_login(self, context, backend):
        update, chat = make_update(callback_data="menu:create")
        await handlers.handle_callback_query(update, context)
        assert chat.replies == [(LOGIN_REQUIRED_MESSAGE, None)]


class TestRecommendations:
    @pytest.mark.asyncio
    async def test_my_requests(self, runtime, context, backend):
        login(runtime)
        backend.routes[("GET", "/api/requests/mine")] = (200, {"items": [{"id": 3, "title": "Ментор"}]})
        update, chat = make_update(callback_data="menu:requests")

        await handlers.handle_callback_query(update, context)

        assert chat.replies[0] == ("Ваши запросы:", None)
        text, markup = chat.replies[1]
        assert text == "• Ментор"
        assert callback_rows(markup) == [["req:matches:3"]]

    @pytest.mark.asyncio
    async def test_no_requests(self, runtime, context, backend):
        login(runtime)
        backend.routes[("GET", "/api/requests/mine")] = (200, [])
        update, chat = make_update(callback_data="menu:requests")

        await handlers.handle_callback_query(update, context)

        assert chat.replies == [("У вас пока нет запросов.", None)]

    @pytest.mark.asyncio
    async def test_matches_show_first_batch(self, runtime, context, backend):
        login(runtime)
        matches = [{"id": n, "ownerId": 6} for n in range(1, 8)]
        backend.routes[("GET", "/api/requests/3/matches")] = (200, matches)
        update, chat = make_update(callback_data="req:matches:3")

        await handlers.handle_callback_query(update, context)

        assert backend.requests[-1].url.params["limit"] == "10"
        assert len(chat.replies) == 6
        assert callback_rows(chat.replies[0][1]) == [
            ["feedback:like:1:3", "feedback:dislike:1:3"],
            ["contact_author:3:6"],
            ["menu:main"],
        ]
        assert chat.replies[-1][0].startswith("Показаны первые рекомендации")

    @pytest.mark.asyncio
    async def test_own_request_has_no_contact_button(self, runtime, context, backend):
        login(runtime, user_id="6")
        backend.routes[("GET", "/api/requests/3/matches")] = (200, [{"id": 1, "ownerId": 6}])
        update, chat = make_update(callback_data="req:matches:3")

        await handlers.handle_callback_query(update, context)

        assert callback_rows(chat.replies[0][1]) == [["feedback:like:1:3", "feedback:dislike:1:3"], ["menu:main"]]

    @pytest.mark.asyncio
    async def test_missing_request(self, runtime, context, backend):
        login(runtime)
        backend.routes[("GET", "/api/requests/3/matches")] = (404, {"message": "not found"})
        update, chat = make_update(callback_data="req:matches:3")

        await handlers.handle_callback_query(update, context)

        assert chat.replies == [("Запрос не найден или более не существует.", None)]

    @pytest.mark.asyncio
    async def test_matches_auth_error_logs_out(self, runtime, context, backend):
        login(runtime)
        backend.routes[("GET", "/api/requests/3/matches")] = (403, {"message": "forbidden"})
        update, chat = make_update(callback_data="req:matches:3")

        await handlers.handle_callback_query(update, context)

        assert chat.replies == [(SESSION_EXPIRED_MESSAGE, None)]


class TestFeedback:
    @pytest.mark.asyncio
    async def test_like(self, runtime, context, backend):
        login(runtime)
        update, chat = make_update(callback_data="feedback:like:1:3")

        await handlers.handle_callback_query(update, context)

        request = backend.requests[-1]
        assert request.url.path == "/api/feedback/match"
        payload = json.loads(request.content)
        assert payload["userId"] == 5
        assert payload["matchId"] == 1
        assert payload["targetRequestId"] == 3
        assert payload["relevanceScore"] == 2
        assert chat.replies == [("Спасибо за обратную связь! 🙌", None)]

    @pytest.mark.asyncio
    async def test_like_failure(self, runtime, context, backend):
        login(runtime)
        backend.routes[("POST", "/api/feedback/match")] = (500, {})
        update, chat = make_update(callback_data="feedback:like:1:3")

        await handlers.handle_callback_query(update, context)

        assert chat.replies == [(matching_handlers.FEEDBACK_FAILED_MESSAGE, None)]

    @pytest.mark.asyncio
    async def test_feedback_needs_backend_user(self, runtime, context, backend):
        runtime.sessions.save_user_jwt("42", "abc")
        update, chat = make_update(callback_data="feedback:like:1:3")

        await handlers.handle_callback_query(update, context)

        assert backend.requests == []
        assert chat.replies == [(matching_handlers.FEEDBACK_LOGIN_MESSAGE, None)]

    @pytest.mark.asyncio
    async def test_dislike_asks_for_reason(self, runtime, context):
        login(runtime)
        update, chat = make_update(callback_data="feedback:dislike:1:3", message_text="🔎 Рекомендация:")

        await handlers.handle_callback_query(update, context)

        text, markup = update.callback_query.edits[0]
        assert text == f"🔎 Рекомендация:\n\n{matching_handlers.DISLIKE_QUESTION}"
        rows = callback_rows(markup)
        assert rows[0] == ["feedback:reason:1:3:not_relevant"]
        assert rows[-1] == ["feedback:reason_other:1:3"]
        assert chat.replies == []

    @pytest.mark.asyncio
    async def test_reason_is_submitted(self, runtime, context, backend):
        login(runtime)
        update, chat = make_update(callback_data="feedback:reason:1:3:too_far")

        await handlers.handle_callback_query(update, context)

        payload = json.loads(backend.requests[-1].content)
        assert payload["relevanceScore"] == -1
        assert payload["reasonCode"] == "too_far"
        assert chat.replies == [("Спасибо, мы учтём это и улучшим рекомендации 🙌", None)]
        assert callback_rows(update.callback_query.edits[0][1]) == [["menu:main"]]

    @pytest.mark.asyncio
    async def test_unknown_reason(self, runtime, context, backend):
        login(runtime)
        update, chat = make_update(callback_data="feedback:reason:1:3:bogus")

        await handlers.handle_callback_query(update, context)

        assert backend.requests == []
        assert chat.replies == [("Неизвестная причина. Попробуйте снова.", None)]

    @pytest.mark.asyncio
    async def test_other_reason_takes_comment(self, runtime, context, backend):
        login(runtime)
        await handlers.handle_callback_query(make_update(callback_data="feedback:reason_other:1:null")[0], context)
        assert runtime.sessions.get("42")["state"] == "feedback:comment"

        update, chat = make_update(text="Не тот город")
        await handlers.handle_text_message(update, context)

        payload = json.loads(backend.requests[-1].content)
        assert payload["comment"] == "Не тот город"
        assert payload["matchId"] == 1
        assert payload["targetRequestId"] is None
        assert payload["relevanceScore"] == -1
        assert chat.replies == [("Спасибо, это помогает нам сделать сервис лучше 🙌", None)]
        assert runtime.sessions.get("42")["state"] is None


class TestContactAuthor:
    @pytest.mark.asyncio
    async def test_opens_chat_and_sends_intro_once(self, runtime, context, backend):
        login(runtime)
        backend.routes[("POST", "/api/chats/start/6")] = (200, {"id": 9})

        update, chat = make_update(callback_data="contact_author:3:6")
        await handlers.handle_callback_query(update, context)
        await handlers.handle_callback_query(make_update(callback_data="contact_author:3:6")[0], context)

        start = backend.requests[0]
        assert json.loads(start.content) == {"originType": "request", "originId": 3}
        intros = [r for r in backend.requests if r.url.path == "/api/chats/9/messages"]
        assert len(intros) == 1
        assert json.loads(intros[0].content) == {"content": matching_handlers.AUTHOR_INTRO_MESSAGE}

        session = runtime.sessions.get("42")
        assert session["state"] == "chatting"
        assert session["active_chat_id"] == "9"
        assert runtime.chat_relay.is_relaying(42, 9)
        text, markup = chat.replies[0]
        assert text == "Чат с автором создан, напиши своё первое сообщение."
        assert callback_rows(markup) == [["chat:exit"], ["menu:main"]]

    @pytest.mark.asyncio
    async def test_own_request(self, runtime, context, backend):
        login(runtime, user_id="6")
        update, chat = make_update(callback_data="contact_author:3:6")

        await handlers.handle_callback_query(update, context)

        assert backend.requests == []
        assert chat.replies == [("Это ваша собственная заявка.", None)]

    @pytest.mark.asyncio
    async def test_author_not_found(self, runtime, context, backend):
        login(runtime)
        backend.routes[("POST", "/api/chats/start/6")] = (404, {"message": "no user"})
        update, chat = make_update(callback_data="contact_author:null:6")

        await handlers.handle_callback_query(update, context)

        assert json.loads(backend.requests[0].content) == {}
        assert chat.replies == [("Автор заявки не найден.", None)]
        assert not runtime.chat_relay.is_active(42)
