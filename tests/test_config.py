from promptsmith.config import DEFAULT_FORCE_GENERATE_PHRASES, PipelineConfig


def test_defaults_from_empty_env():
    cfg = PipelineConfig.from_env({})
    assert cfg.stream_mode is True
    assert cfg.auto_mode is True
    assert cfg.language == "zh"
    assert cfg.prompt_type == "system"
    assert cfg.force_generate_phrases == DEFAULT_FORCE_GENERATE_PHRASES
    assert cfg.read_timeout is None
    assert cfg.temperature == 1.0
    assert cfg.max_tokens == 8192


def test_env_overrides():
    cfg = PipelineConfig.from_env(
        {
            "PROMPTSMITH_STREAM_MODE": "false",
            "PROMPTSMITH_AUTO_MODE": "0",
            "PROMPTSMITH_LANGUAGE": "EN",
            "PROMPTSMITH_PROMPT_TYPE": "user",
            "PROMPTSMITH_FORCE_GENERATE_PHRASES": "build it | 立即生成 |",
            "PROMPTSMITH_AUTO_START_DELAY": "-3",
            "PROMPTSMITH_LLM_READ_TIMEOUT": "45",
            "PROMPTSMITH_MAX_TOKENS": "2048",
            "PROMPTSMITH_PROVIDER": "anthropic",
        }
    )
    assert cfg.stream_mode is False
    assert cfg.auto_mode is False
    assert cfg.language == "en"
    assert cfg.prompt_type == "user"
    assert cfg.force_generate_phrases == ("build it", "立即生成")
    assert cfg.auto_start_delay == 0.0
    assert cfg.read_timeout == 45.0
    assert cfg.max_tokens == 2048
    assert cfg.default_provider == "anthropic"


def test_invalid_values_fall_back():
    cfg = PipelineConfig.from_env({"PROMPTSMITH_LANGUAGE": "fr", "PROMPTSMITH_TEMPERATURE": "warm"})
    assert cfg.language == "zh"
    assert cfg.temperature == 1.0
