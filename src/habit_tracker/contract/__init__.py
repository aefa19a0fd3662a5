"""Habit tracker contract artifacts.

The contract is built outside this project (``make contract``) into a WASM
binary plus its verification key. The prover needs both: the key names the
app, the binary is shipped to the HTTP prover or passed to the CLI prover.
"""

import base64
from dataclasses import dataclass
from pathlib import Path

from habit_tracker.services.exceptions import ContractNotFoundError


@dataclass(frozen=True)
class ContractArtifacts:
    """Loaded contract binary and verification key."""

    vk: str
    wasm_path: Path
    binary_b64: str


def load_contract(wasm_path: str, vk_path: str) -> ContractArtifacts:
    """Load the contract WASM binary and verification key.

    Args:
        wasm_path: Path to ``habit-tracker.wasm``
        vk_path: Path to ``habit-tracker.vk``

    Returns:
        ContractArtifacts with the binary base64-encoded

    Raises:
        ContractNotFoundError: If either file is missing or the key is empty
    """
    wasm = Path(wasm_path).expanduser()
    vk_file = Path(vk_path).expanduser()

    for path in (wasm, vk_file):
        if not path.exists():
            raise ContractNotFoundError(
                f"Contract artifact not found: {path}\n"
                f"Run 'make contract' to build the habit tracker contract."
            )

    vk = vk_file.read_text().strip()
    if not vk:
        raise ContractNotFoundError(f"Verification key file is empty: {vk_file}")

    return ContractArtifacts(
        vk=vk,
        wasm_path=wasm.resolve(),
        binary_b64=base64.b64encode(wasm.read_bytes()).decode("ascii"),
    )
