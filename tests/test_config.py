import pytest

from shared.config import RetryPolicy, Settings

ENV_KEYS = [
    "QUEUE_NAME", "MAX_CONCURRENT_JOBS", "RATE_LIMIT_MAX", "POLL_INTERVAL_SECONDS",
    "ENABLE_DB_LOG", "LOG_LEVEL", "WORKER_ID", "PROCESSOR_TOKEN", "REDIS_URL",
]


@pytest.fixture
def clean_env(monkeypatch):
    # load_dotenv writes straight into os.environ, so register every key with monkeypatch first
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "placeholder")
        monkeypatch.delenv(key)
    return monkeypatch


def test_defaults_without_environment(clean_env, tmp_path):
    settings = Settings.from_env(tmp_path / "missing.env")

    assert settings.queue_name == "message-processing"
    assert settings.worker_concurrency == 5
    assert settings.rate_limit_max == 20
    assert settings.processor_token is None
    assert settings.enable_db_log is True
    assert settings.consumer_name.startswith("worker-")


def test_env_values_override_defaults(clean_env, tmp_path):
    clean_env.setenv("QUEUE_NAME", "excel-jobs")
    clean_env.setenv("MAX_CONCURRENT_JOBS", "8")
    clean_env.setenv("POLL_INTERVAL_SECONDS", "2.5")
    clean_env.setenv("ENABLE_DB_LOG", "false")
    clean_env.setenv("LOG_LEVEL", "debug")
    clean_env.setenv("WORKER_ID", "7")

    settings = Settings.from_env(tmp_path / "missing.env")

    assert settings.queue_name == "excel-jobs"
    assert settings.worker_concurrency == 8
    assert settings.poll_interval_seconds == 2.5
    assert settings.enable_db_log is False
    assert settings.log_level == "DEBUG"
    assert settings.consumer_name == "worker-7"


@pytest.mark.parametrize("raw", ["abc", "0", "-3", ""])
def test_bad_numbers_fall_back_to_defaults(clean_env, tmp_path, raw):
    clean_env.setenv("MAX_CONCURRENT_JOBS", raw)
    clean_env.setenv("RATE_LIMIT_MAX", raw)

    settings = Settings.from_env(tmp_path / "missing.env")

    assert settings.worker_concurrency == 5
    assert settings.rate_limit_max == 20


def test_dotenv_file_is_loaded(clean_env, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("QUEUE_NAME=from-file\nREDIS_URL=redis://cache:6379/2\n", encoding="utf-8")

    settings = Settings.from_env(str(env_file))

    assert settings.queue_name == "from-file"
    assert settings.redis_url == "redis://cache:6379/2"


def test_process_env_wins_over_dotenv(clean_env, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("QUEUE_NAME=from-file\n", encoding="utf-8")
    clean_env.setenv("QUEUE_NAME", "from-process")

    assert Settings.from_env(env_file).queue_name == "from-process"


def test_retry_policy_follows_settings():
    settings = Settings(retry_initial_delay=1, retry_growth_factor=3, retry_max_delay=20)
    policy = settings.retry_policy

    assert [policy.delay_for(k) for k in range(4)] == [1, 3, 9, 20]


def test_shrinking_growth_factor_is_treated_as_constant():
    policy = RetryPolicy(initial_delay=5, growth_factor=0.5, max_delay=60)
    assert [policy.delay_for(k) for k in range(3)] == [5, 5, 5]
