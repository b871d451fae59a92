from datetime import datetime

from adminbot.services.booking.base import CatalogService, StaffMember
from adminbot.services.intermediate_context import IntermediateContext
from adminbot.services.prompt_service import COMMAND_GRAMMAR, build_messages, build_system_prompt
from adminbot.services.state_machine import ProcessingStatus


class TestBuildSystemPrompt:
    def test_catalog_and_grammar(self):
        prompt = build_system_prompt(
            services=[CatalogService("1", "Manicure", price_min=1200, price_max=1500)],
            staff=[StaffMember("10", "Maria", "Nail master")],
            now=datetime(2024, 7, 19, 12, 0),
        )

        assert "- Manicure 1200-1500" in prompt
        assert "- Maria (Nail master)" in prompt
        assert "Now: 2024-07-19 12:00, Friday" in prompt
        assert COMMAND_GRAMMAR in prompt

    def test_continuation_hint_and_client_name(self):
        context = IntermediateContext(
            status=ProcessingStatus.STARTED,
            message="Maria",
            started_at=0.0,
            token="t",
            last_bot_question="Which master would you like?",
            expected_reply_type="staff_selection",
        )
        prompt = build_system_prompt(services=[], staff=[], context=context, client_name="Anna")

        assert "The client's name is Anna" in prompt
        assert '"Which master would you like?"' in prompt
        assert "naming a master" in prompt


class TestBuildMessages:
    def test_appends_user_text(self):
        history = [{"role": "assistant", "content": "Hi!"}]
        messages = build_messages("system", history, "Haircut please")
        assert messages == [
            {"role": "system", "content": "system"},
            {"role": "assistant", "content": "Hi!"},
            {"role": "user", "content": "Haircut please"},
        ]

    def test_does_not_repeat_last_user_message(self):
        history = [{"role": "user", "content": "Haircut please"}]
        assert len(build_messages("system", history, "Haircut please")) == 2
