from __future__ import annotations

import pytest


def test_new_chat_gets_fresh_id_and_empty_transcript() -> None:
    from mcpchat.chat.conversation import ConversationState

    conv = ConversationState()
    first = conv.start_new_chat()
    conv.add_user_message("Xin chào")

    second = conv.start_new_chat()

    assert first.startswith("chat_")
    assert second != first
    assert len(conv) == 0
    assert conv.is_current_chat(second)
    assert not conv.is_current_chat(first)
    assert not conv.is_current_chat(None)


def test_add_to_existing_chat_rejects_stale_id() -> None:
    from mcpchat.chat.conversation import ConversationState

    conv = ConversationState()
    cid = conv.start_new_chat()

    conv.add_to_existing_chat(cid, "Câu hỏi")
    with pytest.raises(ValueError):
        conv.add_to_existing_chat("chat_0_deadbeef", "Câu khác")

    assert [t.content for t in conv.get_history()] == ["Câu hỏi"]


def test_assistant_messages_carry_persona_prefix_once() -> None:
    from mcpchat.chat.conversation import ConversationState

    conv = ConversationState(persona_id="lan-ong")
    conv.add_assistant_message("Khí huyết điều hòa.")
    conv.add_assistant_message("Lãn Ông: Đã rõ.")

    contents = [t.content for t in conv.get_history()]
    assert contents == ["Lãn Ông: Khí huyết điều hòa.", "Lãn Ông: Đã rõ."]


def test_default_persona_has_no_prefix_and_unknown_persona_falls_back() -> None:
    from mcpchat.chat.conversation import ConversationState

    conv = ConversationState()
    conv.start_new_chat("khong-ton-tai")
    conv.add_assistant_message("Chào bạn.")

    assert conv.persona.id == "yitam"
    assert conv.get_history()[0].content == "Chào bạn."


def test_tool_result_must_follow_matching_tool_use() -> None:
    from mcpchat.chat.conversation import ConversationState

    conv = ConversationState()
    conv.add_user_message("Tra cứu giúp tôi")

    with pytest.raises(ValueError):
        conv.add_tool_result_message("t1", "kết quả")

    conv.add_tool_use_message("t1", "search", {"query": "sen"})
    conv.add_tool_result_message("t1", {"hits": 2})
    with pytest.raises(ValueError):
        conv.add_tool_result_message("t1", "lần hai")

    history = conv.get_history()
    assert [(t.role, t.kind) for t in history] == [("user", "text"), ("assistant", "tool_use"), ("user", "tool_result")]
    assert history[1].tool_input == {"query": "sen"}
    assert history[2].content == '{\n  "hits": 2\n}'


def test_history_is_a_copy() -> None:
    from mcpchat.chat.conversation import ConversationState

    conv = ConversationState()
    conv.add_user_message("Một")

    h = conv.get_history()
    h[0].content = "đã sửa"
    h.append(h[0])

    assert [t.content for t in conv.get_history()] == ["Một"]
