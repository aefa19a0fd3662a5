"""Tests for the habit-tracker CLI (argument parsing and exit codes)."""

from unittest.mock import AsyncMock

import pytest

from habit_tracker.cli import habit
from habit_tracker.models.settlement import Network, SettlementResult
from habit_tracker.services.exceptions import ContractNotFoundError, NoFundingAvailableError
from habit_tracker.services.tracker.service import HabitTokenService


def test_no_command_defaults_to_serve():
    args = habit.parse_args([])

    assert args.command == "serve"
    assert args.host is None
    assert args.port is None


def test_update_accepts_short_flag():
    args = habit.parse_args(["-v", "update", "-u", "ab:0"])

    assert args.command == "update"
    assert args.utxo == "ab:0"
    assert args.verbose is True


def test_create_requires_habit():
    with pytest.raises(SystemExit):
        habit.parse_args(["create"])


@pytest.mark.asyncio
async def test_create_prints_token(settings, monkeypatch, capsys):
    service = AsyncMock(spec=HabitTokenService)
    service.create_token.return_value = SettlementResult(
        commit_txid="c1" * 32, spell_txid="d1" * 32, network=Network.TEST
    )
    monkeypatch.setattr(habit, "create_service", AsyncMock(return_value=service))

    code = await habit.async_main(habit.parse_args(["create", "--habit", "Reading"]), settings)

    assert code == habit.EXIT_OK
    service.create_token.assert_awaited_once_with("Reading")
    assert "d1" * 32 + ":0" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_no_funding_prints_address(settings, monkeypatch, capsys):
    service = AsyncMock(spec=HabitTokenService)
    service.create_token.side_effect = NoFundingAvailableError("bcrt1qfundme", network="regtest")
    monkeypatch.setattr(habit, "create_service", AsyncMock(return_value=service))

    code = await habit.async_main(habit.parse_args(["create", "--habit", "Reading"]), settings)

    assert code == habit.EXIT_ERROR
    assert "bcrt1qfundme" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_malformed_utxo_fails_before_wiring(settings, monkeypatch, capsys):
    create_service = AsyncMock()
    monkeypatch.setattr(habit, "create_service", create_service)

    code = await habit.async_main(habit.parse_args(["view", "-u", "nope"]), settings)

    assert code == habit.EXIT_ERROR
    create_service.assert_not_called()
    assert "txid:vout" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_wiring_failure_is_reported(settings, monkeypatch, capsys):
    monkeypatch.setattr(
        habit,
        "create_service",
        AsyncMock(side_effect=ContractNotFoundError("Contract artifact not found")),
    )

    code = await habit.async_main(habit.parse_args(["update", "-u", "ab" * 32 + ":0"]), settings)

    assert code == habit.EXIT_ERROR
    assert "Contract artifact not found" in capsys.readouterr().err
