"""
tests/test_cli.py -- Password hashing command-line tools.
"""

from __future__ import annotations

import pytest

import main
from auth import passwords


def test_argon_prints_a_verifiable_hash(capsys) -> None:
    assert main.argon_main(["secret"]) == 0
    encoded = capsys.readouterr().out.strip()
    assert encoded.startswith("$argon2id$v=19$m=64,t=1,")
    passwords.verify(encoded, "secret")


def test_bcrypt_with_cost(capsys) -> None:
    assert main.bcrypt_main(["secret", "4"]) == 0
    hashed = capsys.readouterr().out.strip()
    assert hashed.startswith("$2b$04$")
    assert passwords.verify_bcrypt(hashed, "secret")


def test_bcrypt_invalid_cost(capsys) -> None:
    assert main.bcrypt_main(["secret", "3"]) == 1
    assert capsys.readouterr().err.startswith("  [!] ")


def test_bcrypt_password_too_long(capsys) -> None:
    assert main.bcrypt_main(["x" * 73, "4"]) == 1
    assert "72 bytes" in capsys.readouterr().err


def test_bcrypt_score(monkeypatch, capsys) -> None:
    budgets = []
    monkeypatch.setattr(passwords, "find_best_cost", lambda budget: budgets.append(budget) or 11)
    assert main.bcrypt_score_main([]) == 0
    assert capsys.readouterr().out.strip() == "11"
    assert budgets == [0.25]


@pytest.mark.parametrize(
    "entry, argv",
    [
        (main.argon_main, []),
        (main.argon_main, ["a", "b"]),
        (main.bcrypt_main, []),
        (main.bcrypt_main, ["secret", "twelve"]),
        (main.bcrypt_score_main, ["extra"]),
        (main.main, []),
        (main.main, ["sha1", "secret"]),
    ],
)
def test_wrong_usage_exits_1(entry, argv, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        entry(argv)
    assert excinfo.value.code == 1
    assert "usage:" in capsys.readouterr().err


def test_subcommands(capsys) -> None:
    assert main.main(["bcrypt", "secret", "4"]) == 0
    assert capsys.readouterr().out.startswith("$2b$04$")
