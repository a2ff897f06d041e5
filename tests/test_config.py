import pytest

from rozo_checkout.core.config import (
    DEFAULT_API_URL,
    CheckoutConfig,
    CheckoutParameters,
    ConfigError,
    load_checkout_config,
)
from rozo_checkout.core.environment import build_environment, load_env_file


def test_app_id_is_required():
    with pytest.raises(ConfigError, match="ROZO_APP_ID"):
        load_checkout_config(env_file=None, base={})


def test_defaults_apply_when_only_app_id_is_set():
    config = load_checkout_config(env_file=None, base={"ROZO_APP_ID": "app"})

    assert config.api_url == DEFAULT_API_URL
    assert config.api_token is None
    assert config.request_timeout_seconds == 30.0
    assert config.polling.find_payment_interval_seconds == 1.0
    assert config.polling.refresh_order_interval_seconds == 0.3
    assert config.polling.push_grace_seconds == 30.0
    assert config.headers() == {"Content-Type": "application/json"}


def test_env_file_is_parsed(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "\n".join(
            [
                "# checkout settings",
                "export ROZO_APP_ID=from-file",
                'ROZO_API_URL="https://api.test/v1/"',
                "ROZO_API_TOKEN='secret'",
                "not a setting",
            ]
        ),
        encoding="utf-8",
    )

    config = load_checkout_config(env_file=str(env_file), base={})

    assert config.app_id == "from-file"
    assert config.api_url == "https://api.test/v1"
    assert config.endpoint("/getOrder") == "https://api.test/v1/getOrder"
    assert config.headers()["Authorization"] == "Bearer secret"


def test_precedence_of_sources(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("ROZO_APP_ID=file\nROZO_API_TOKEN=file-token\n", encoding="utf-8")

    environment = build_environment(
        env_file=str(env_file),
        base={"ROZO_APP_ID": "process"},
        overrides={"ROZO_API_TOKEN": "override"},
    )

    assert environment.get("ROZO_APP_ID") == "process"
    assert environment.get("ROZO_API_TOKEN") == "override"
    assert environment.get("ROZO_API_URL") is None


def test_load_env_file_keeps_existing_values(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("ROZO_APP_ID=file\nROZO_API_TOKEN=token\n", encoding="utf-8")
    environ = {"ROZO_APP_ID": "existing"}

    merged = load_env_file(str(env_file), environ=environ)

    assert merged == {"ROZO_APP_ID": "existing", "ROZO_API_TOKEN": "token"}
    assert environ["ROZO_API_TOKEN"] == "token"


def test_missing_env_file_is_ignored(tmp_path):
    config = load_checkout_config(
        env_file=str(tmp_path / "absent.env"), base={"ROZO_APP_ID": "app"}
    )
    assert config.app_id == "app"


@pytest.mark.parametrize(
    "key, value",
    [
        ("ROZO_FIND_PAYMENT_INTERVAL_SECONDS", "soon"),
        ("ROZO_REFRESH_ORDER_INTERVAL_SECONDS", "0"),
        ("ROZO_REQUEST_TIMEOUT_SECONDS", "-1"),
    ],
)
def test_invalid_durations_are_rejected(key, value):
    with pytest.raises(ConfigError, match=key):
        load_checkout_config(env_file=None, base={"ROZO_APP_ID": "app", key: value})


def test_push_grace_may_be_disabled():
    config = load_checkout_config(
        env_file=None, base={"ROZO_APP_ID": "app", "ROZO_PUSH_GRACE_SECONDS": "0"}
    )
    assert config.push_grace_seconds == 0.0


def test_api_url_must_be_http():
    with pytest.raises(ConfigError, match="ROZO_API_URL"):
        CheckoutConfig.from_mapping({"ROZO_APP_ID": "app", "ROZO_API_URL": "ftp://api"})


def test_parameters_and_keywords_win_over_environment():
    parameters = CheckoutParameters(app_id="param-app", find_payment_interval_seconds=2)

    config = load_checkout_config(
        env_file=None,
        base={"ROZO_APP_ID": "env-app", "ROZO_API_TOKEN": "env-token"},
        parameters=parameters,
        api_token="kw-token",
    )

    assert parameters.as_overrides() == {
        "ROZO_APP_ID": "param-app",
        "ROZO_FIND_PAYMENT_INTERVAL_SECONDS": "2",
    }
    assert config.app_id == "param-app"
    assert config.api_token == "kw-token"
    assert config.find_payment_interval_seconds == 2.0
