"""Tests for loading contract artifacts."""

import base64

import pytest

from habit_tracker.contract import load_contract
from habit_tracker.services.exceptions import ContractNotFoundError


@pytest.fixture
def artifacts(tmp_path):
    wasm = tmp_path / "habit-tracker.wasm"
    vk = tmp_path / "habit-tracker.vk"
    wasm.write_bytes(b"\x00asm\x01\x00\x00\x00")
    vk.write_text("f0" * 32 + "\n")
    return wasm, vk


def test_load_contract(artifacts):
    wasm, vk = artifacts

    contract = load_contract(str(wasm), str(vk))

    assert contract.vk == "f0" * 32
    assert contract.wasm_path == wasm.resolve()
    assert base64.b64decode(contract.binary_b64) == b"\x00asm\x01\x00\x00\x00"


def test_missing_wasm(artifacts, tmp_path):
    _, vk = artifacts

    with pytest.raises(ContractNotFoundError, match="make contract"):
        load_contract(str(tmp_path / "missing.wasm"), str(vk))


def test_empty_verification_key(artifacts):
    wasm, vk = artifacts
    vk.write_text("  \n")

    with pytest.raises(ContractNotFoundError, match="empty"):
        load_contract(str(wasm), str(vk))
