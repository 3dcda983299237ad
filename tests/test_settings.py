import pytest

from dvm_node.bootstrap import build_payments_from_env, build_provider_from_env
from dvm_node.llm import ProviderRouter
from dvm_node.payments import InMemoryPaymentBackend, LNbitsPaymentClient
from dvm_node.protocol import nip04
from dvm_node.settings import DVMConfig, load_config_from_env


def test_defaults_are_free_text_generation() -> None:
    config = DVMConfig()
    assert config.supported_job_kinds == [5050, 5100]
    assert config.price_for(5100) == 0
    assert config.public_key is None
    assert config.node_key == ""


def test_public_key_is_derived_from_signing_key() -> None:
    secret = "3" * 64
    config = DVMConfig(signing_key=secret)
    assert config.public_key == nip04.derive_public_key(secret)

    with pytest.raises(ValueError):
        DVMConfig(signing_key="not-hex")


def test_validator_rejects_bad_limits() -> None:
    with pytest.raises(ValueError):
        DVMConfig(supported_job_kinds=[])
    with pytest.raises(ValueError):
        DVMConfig(price_per_kind={5100: -1})
    with pytest.raises(ValueError):
        DVMConfig(max_publish_attempts=0)


def test_load_config_from_env_reads_dvm_variables() -> None:
    config = load_config_from_env(
        {
            "DVM_SUPPORTED_JOB_KINDS": "5100, 5001,bogus",
            "DVM_PRICE_PER_KIND": "5100:1000,5001:0",
            "DVM_RELAYS": "wss://a.example,wss://b.example",
            "DVM_PUBLIC_KEY": "c" * 64,
            "DVM_POLL_INTERVAL_MS": "50",
            "DVM_MAX_INFERENCE_SECONDS": "2.5",
            "DVM_BLOCKED_REQUESTERS": "bad1,bad2",
            "DVM_SEND_PROCESSING_FEEDBACK": "0",
            "DVM_INVOICE_MEMO_PREFIX": "Job",
        }
    )
    assert config.supported_job_kinds == [5100, 5001]
    assert config.price_for(5100) == 1000
    assert config.price_for(5001) == 0
    assert config.relays == ["wss://a.example", "wss://b.example"]
    assert config.node_key == "c" * 64
    assert config.poll_interval_ms == 50
    assert config.max_inference_seconds == 2.5
    assert config.blocked_requesters == {"bad1", "bad2"}
    assert config.send_processing_feedback is False
    assert config.invoice_memo_prefix == "Job"


def test_load_config_from_env_rejects_malformed_price_list() -> None:
    with pytest.raises(ValueError):
        load_config_from_env({"DVM_PRICE_PER_KIND": "5100=1000"})


def test_bootstrap_treats_blank_env_values_as_unset() -> None:
    assert isinstance(build_payments_from_env({"DVM_LNBITS_API_KEY": "   "}), InMemoryPaymentBackend)
    assert not isinstance(build_provider_from_env({"DVM_REMOTE_LLM_API_KEY": " "}), ProviderRouter)

    payments = build_payments_from_env(
        {"DVM_LNBITS_API_KEY": " key ", "DVM_LNBITS_URL": " https://wallet.example/ "}
    )
    assert isinstance(payments, LNbitsPaymentClient)
    assert payments.api_key == "key"
    assert payments.base_url == "https://wallet.example"

    router = build_provider_from_env({"DVM_REMOTE_LLM_API_KEY": "sk-test"})
    assert isinstance(router, ProviderRouter)
    assert router.resolve_provider("gpt-4o-mini") is not router.default
