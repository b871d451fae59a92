import pytest
from pydantic import ValidationError

from adminbot.config import Settings


def test_abandon_threshold_must_outlast_model_stage():
    with pytest.raises(ValidationError, match="abandon_after_seconds"):
        Settings(abandon_after_seconds=40, llm_timeout_seconds=20.0, llm_max_attempts=2)


def test_abandon_threshold_must_outlast_command_stage():
    with pytest.raises(ValidationError):
        Settings(abandon_after_seconds=30, llm_timeout_seconds=10.0, llm_max_attempts=1, command_timeout_seconds=30.0)


def test_consistent_budget_accepted():
    config = Settings(abandon_after_seconds=90, llm_timeout_seconds=20.0, llm_max_attempts=3)
    assert config.abandon_after_seconds == 90
