"""
CLI: each invocation loads the state file, runs one command and saves.
"""

import json

import pytest

from marketcore.cli import main


@pytest.fixture
def cli(tmp_path, capsys):
    state = str(tmp_path / "state.json")

    def invoke(*argv, ok=True):
        if ok:
            main(["--state", state, *argv])
        else:
            with pytest.raises(SystemExit):
                main(["--state", state, *argv])
        return json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    return invoke


def test_market_lifecycle(cli):
    alice = cli("create-user", "alice", "--balance", "500")["user_id"]
    bob = cli("create-user", "bob")["user_id"]

    created = cli("create-market", "Who wins?", alice,
                  "--answer", "A", "--answer", "B")
    contract_id = created["contract_id"]
    assert list(created["answers"]) == ["A", "B", "Other"]

    new_id = cli("add-answer", contract_id, bob, "C")["new_answer_id"]
    market = cli("market", contract_id)
    assert [a["text"] for a in market["answers"]] == ["A", "B", "C", "Other"]
    assert market["answers"][2]["id"] == new_id
    assert sum(a["prob"] for a in market["answers"]) == pytest.approx(1, abs=1e-6)

    bet = cli("bet", contract_id, bob, "YES", "10", "--answer", new_id)
    assert bet["is_filled"] is True
    assert bet["amount"] == pytest.approx(10, abs=1e-6)
    assert bet["shares"] > 0
    assert bet["related_bet_ids"]

    assert cli("user", alice)["balance"] == pytest.approx(400)
    assert cli("redeem", contract_id, bob)["redeemed"] == 0
    assert cli("resume-conversions")["jobs"] == 0


def test_binary_limit_order(cli):
    alice = cli("create-user", "alice")["user_id"]
    contract_id = cli("create-market", "Rain?", alice, "--binary")["contract_id"]

    order = cli("bet", contract_id, alice, "YES", "20", "--limit", "0.4")
    assert order["is_filled"] is False
    assert cli("market", contract_id)["prob"] == pytest.approx(0.5)


def test_mint(cli):
    alice = cli("create-user", "alice", "--balance", "5")["user_id"]
    assert cli("mint", alice, "7")["balance"] == pytest.approx(12)


def test_errors_are_reported(cli):
    out = cli("mint", "ghost", "7", ok=False)
    assert out["ok"] is False
    assert "not found" in out["error"].lower()

    out = cli("user", "ghost")
    assert out == {"ok": False, "error": "user ghost not found"}
