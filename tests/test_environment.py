"""Tests for credential provisioning."""

import os

import pytest

from dtwrapper.main import (
    API_TOKEN_VARS,
    OAUTH_CLIENT_VARS,
    parse_config,
    set_env_from_config_or_prompt,
    set_environment_vars,
)


@pytest.fixture
def prompts(monkeypatch):
    """Record prompt messages and answer them from a queue."""
    asked = []
    answers = []

    def fake_input(message=""):
        asked.append(message)
        if not answers:
            raise EOFError
        return answers.pop(0)

    monkeypatch.setattr("builtins.input", fake_input)
    return asked, answers


class TestSetEnvFromConfigOrPrompt:
    def test_existing_variable_is_untouched(self, prompts):
        asked, _ = prompts
        environ = {"DT_ENV_URL": "from-env"}
        config = parse_config(["DT_ENV_URL = from-config"])

        set_env_from_config_or_prompt("DT_ENV_URL", "url: ", config, environ)

        assert environ["DT_ENV_URL"] == "from-env"
        assert asked == []

    def test_existing_empty_variable_is_untouched(self, prompts):
        asked, _ = prompts
        environ = {"DT_ENV_URL": ""}

        set_env_from_config_or_prompt("DT_ENV_URL", "url: ", parse_config([]), environ)

        assert environ["DT_ENV_URL"] == ""
        assert asked == []

    def test_config_value_is_copied(self, prompts):
        asked, _ = prompts
        environ = {}
        config = parse_config(["DT_API_TOKEN = dt0c01.A.B"])

        set_env_from_config_or_prompt("DT_API_TOKEN", "token: ", config, environ)

        assert environ == {"DT_API_TOKEN": "dt0c01.A.B"}
        assert asked == []

    def test_prompts_when_missing(self, prompts):
        asked, answers = prompts
        answers.append("  typed-value \n")
        environ = {}

        set_env_from_config_or_prompt("DT_CLIENT_ID", "client id: ", parse_config([]), environ)

        assert asked == ["client id: "]
        assert environ["DT_CLIENT_ID"] == "typed-value"

    def test_empty_answer_is_accepted(self, prompts):
        _, answers = prompts
        answers.append("")
        environ = {}

        set_env_from_config_or_prompt("DT_CLIENT_ID", "client id: ", parse_config([]), environ)

        assert environ["DT_CLIENT_ID"] == ""

    def test_closed_stdin_sets_empty_value(self, prompts):
        environ = {}

        set_env_from_config_or_prompt("DT_ACCOUNT_ID", "account: ", parse_config([]), environ)

        assert environ["DT_ACCOUNT_ID"] == ""


class TestSetEnvironmentVars:
    def test_no_mode_sets_nothing(self, prompts):
        asked, _ = prompts
        environ = {}

        set_environment_vars(parse_config(["DT_ENV_URL = x"]), environ)

        assert environ == {}
        assert asked == []

    def test_api_token_mode_prompts_in_order(self, prompts):
        asked, answers = prompts
        answers.extend(["https://abc.live.dynatrace.com", "dt0c01.A.B"])
        environ = {}

        set_environment_vars(parse_config(["api_token = true"]), environ)

        assert asked == [msg for _, msg in API_TOKEN_VARS]
        assert environ == {
            "DT_ENV_URL": "https://abc.live.dynatrace.com",
            "DT_API_TOKEN": "dt0c01.A.B",
        }

    def test_oauth_mode_mixes_sources(self, prompts):
        asked, answers = prompts
        answers.append("urn:dtaccount:1234")
        environ = {"DT_CLIENT_ID": "dt0s02.ENV"}
        config = parse_config(["oauth_client = true", "DT_CLIENT_SECRET = dt0s02.ENV.SECRET"])

        set_environment_vars(config, environ)

        assert asked == [OAUTH_CLIENT_VARS[2][1]]
        assert environ == {
            "DT_CLIENT_ID": "dt0s02.ENV",
            "DT_CLIENT_SECRET": "dt0s02.ENV.SECRET",
            "DT_ACCOUNT_ID": "urn:dtaccount:1234",
        }

    def test_both_modes_provision_all_five(self, prompts):
        asked, answers = prompts
        answers.extend(["a", "b", "c", "d", "e"])
        environ = {}

        set_environment_vars(parse_config(["api_token = true", "oauth_client = true"]), environ)

        assert list(environ) == [
            "DT_ENV_URL", "DT_API_TOKEN", "DT_CLIENT_ID", "DT_CLIENT_SECRET", "DT_ACCOUNT_ID",
        ]
        assert len(asked) == 5

    def test_defaults_to_process_environment(self, prompts, monkeypatch):
        monkeypatch.setenv("DT_ENV_URL", "placeholder")
        monkeypatch.delenv("DT_ENV_URL")
        monkeypatch.setenv("DT_API_TOKEN", "already-set")
        config = parse_config(["api_token = true", "DT_ENV_URL = https://cfg"])

        set_environment_vars(config)

        assert os.environ["DT_ENV_URL"] == "https://cfg"
        assert os.environ["DT_API_TOKEN"] == "already-set"
