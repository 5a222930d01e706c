from __future__ import annotations

import logging

from orbbot.logging_utils import JsonFormatter
from orbbot.security.redaction import REDACTED, redact_data, sanitize_mapping, sanitize_text

FAKE_PRIVATE_KEY = "5KQwrPbwdL6PhXujxW37FSSQZ1JiwsST4cqQzDeyXtP79zkvFD3"
FAKE_API_KEY = "abcdef1234567890"
KEYPAIR_BYTES = "[" + ",".join(str(n % 256) for n in range(17, 17 + 64)) + "]"


def test_sanitize_mapping_masks_key_material_but_not_public_chain_data() -> None:
    payload = {
        "PRIVATE_KEY": FAKE_PRIVATE_KEY,
        "nested": {"keypair_path": "/home/me/id.json", "signature": "5abcSig", "amount": 1},
        "RPC_ENDPOINT": "https://api.mainnet-beta.solana.com",
    }

    sanitized = sanitize_mapping(payload)

    assert sanitized["PRIVATE_KEY"] != FAKE_PRIVATE_KEY
    assert sanitized["PRIVATE_KEY"].startswith(FAKE_PRIVATE_KEY[:4])
    assert sanitized["nested"]["keypair_path"] != "/home/me/id.json"
    assert sanitized["nested"]["signature"] == "5abcSig"
    assert sanitized["nested"]["amount"] == 1
    assert sanitized["RPC_ENDPOINT"] == "https://api.mainnet-beta.solana.com"


def test_none_secret_becomes_placeholder() -> None:
    assert sanitize_mapping({"private_key": None})["private_key"] == REDACTED


def test_sanitize_text_redacts_inline_secrets() -> None:
    text = (
        f"private_key={FAKE_PRIVATE_KEY} "
        "Authorization: Bearer supersecrettoken "
        f"https://rpc.example.invalid/?api-key={FAKE_API_KEY}"
    )

    sanitized = sanitize_text(text)

    assert FAKE_PRIVATE_KEY not in sanitized
    assert "supersecrettoken" not in sanitized
    assert FAKE_API_KEY not in sanitized
    assert "private_key=[REDACTED]" in sanitized
    assert "Authorization: Bearer [REDACTED]" in sanitized


def test_sanitize_text_redacts_keypair_byte_arrays_and_json_fields() -> None:
    text = f'loaded {KEYPAIR_BYTES} and {{"privateKey": "{FAKE_PRIVATE_KEY}"}}'

    sanitized = sanitize_text(text)

    assert KEYPAIR_BYTES not in sanitized
    assert "loaded [REDACTED]" in sanitized
    assert FAKE_PRIVATE_KEY not in sanitized


def test_sanitize_text_masks_known_secrets() -> None:
    sanitized = sanitize_text(f"wallet {FAKE_API_KEY} ready", known_secrets=[FAKE_API_KEY, ""])

    assert FAKE_API_KEY not in sanitized
    assert sanitized.startswith("wallet abcd")


def test_redact_data_walks_lists_and_tuples() -> None:
    redacted = redact_data([{"secret": "hunter22"}, ("private_key=abc",), 7])

    assert redacted[0]["secret"] != "hunter22"
    assert redacted[1] == ("private_key=[REDACTED]",)
    assert redacted[2] == 7


def test_json_formatter_redacts_message_and_extras() -> None:
    formatter = JsonFormatter()
    record = logging.LogRecord(
        name="orbbot.test",
        level=logging.ERROR,
        pathname=__file__,
        lineno=1,
        msg="submit failed private_key=%s",
        args=(FAKE_PRIVATE_KEY,),
        exc_info=None,
    )
    record.extra = {"PRIVATE_KEY": FAKE_PRIVATE_KEY, "signature": "5abcSig"}

    output = formatter.format(record)

    assert FAKE_PRIVATE_KEY not in output
    assert "5abcSig" in output
