"""
Runtime config tests: validated updates, secret masking, reset.
"""

from config import RuntimeConfig


class TestUpdate:
    """Test RuntimeConfig.update."""

    def setup_method(self):
        self.config = RuntimeConfig()

    def test_valid_values_applied(self):
        result = self.config.update(step_budget=8, llm_temperature=0.7)
        assert result == {"updated": ["step_budget", "llm_temperature"], "ignored": []}
        assert self.config.step_budget == 8
        assert self.config.llm_temperature == 0.7

    def test_out_of_range_rejected(self):
        before = self.config.step_budget
        result = self.config.update(step_budget=0)
        assert result["ignored"] == ["step_budget"]
        assert self.config.step_budget == before

    def test_bool_is_not_a_number(self):
        assert self.config.update(tool_concurrency=True)["ignored"] == ["tool_concurrency"]

    def test_unknown_and_private_keys_ignored(self):
        result = self.config.update(nonsense=1, _lock=None)
        assert result == {"updated": [], "ignored": ["nonsense", "_lock"]}

    def test_model_name_checked(self):
        assert self.config.update(default_model="claude-sonnet-4-5")["updated"] == ["default_model"]
        assert self.config.update(default_model="gpt 4; drop")["ignored"] == ["default_model"]

    def test_search_url_must_be_http(self):
        assert self.config.update(serpapi_url="ftp://search.example")["ignored"] == ["serpapi_url"]
        self.config.update(serpapi_url="  https://search.example/json ")
        assert self.config.serpapi_url == "https://search.example/json"


class TestExportAndReset:
    """Test to_dict and reset_to_defaults."""

    def test_secrets_masked(self):
        config = RuntimeConfig()
        config.update(serpapi_key="sk-live-123")
        data = config.to_dict()
        assert data["serpapi_key"] == "***"
        assert data["database_url"] == "***"
        assert not any(key.startswith("_") for key in data)

    def test_reset(self):
        config = RuntimeConfig()
        default = config.step_budget
        config.update(step_budget=default + 1)

        result = config.reset_to_defaults()

        assert result["reset"] is True
        assert "step_budget" in result["changes"]
        assert config.step_budget == default
