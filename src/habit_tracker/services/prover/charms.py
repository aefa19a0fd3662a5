"""Charms prover and spell extractor adapters.

Two provers implement the same port:
- CharmsCliProver: runs ``charms spell prove --mock`` locally (test network)
- CharmsHttpProver: posts to the Charms prover service (production network)

Both return the unsigned (commit, spell) transaction pair. CharmsSpellReader
wraps ``charms tx show-spell`` to decode the spell carried by a transaction.

Error classification:
    - Timeout → ProverTimeoutError (transient)
    - Connection refused / prover unreachable → ProverUnavailableError (transient)
    - Non-zero exit / non-2xx status → ProverError (permanent)
    - Unparsable output → MalformedResponseError (permanent)
"""

import asyncio
import json
import os
import tempfile
from typing import Any, Optional, Sequence

import httpx
import structlog

from habit_tracker.contract import ContractArtifacts
from habit_tracker.core.config import Settings
from habit_tracker.models.settlement import Network
from habit_tracker.models.transition import TransitionRequest
from habit_tracker.services.exceptions import (
    MalformedResponseError,
    ProverError,
    ProverTimeoutError,
    ProverUnavailableError,
)
from habit_tracker.services.tracker.descriptor import TransitionDescriptorBuilder

logger = structlog.get_logger()


def parse_prover_output(data: Any) -> tuple[str, str]:
    """Extract the (commit, spell) hex pair from prover output.

    The prover returns a list of transactions, each either a bare hex string
    or an object ``{"bitcoin": "<hex>"}``. Non-bitcoin entries are ignored.

    Raises:
        MalformedResponseError: If the output does not hold exactly two transactions
    """
    if not isinstance(data, list):
        raise MalformedResponseError(f"Prover output must be a list, got {type(data).__name__}")

    txs = []
    for item in data:
        if isinstance(item, str):
            txs.append(item)
        elif isinstance(item, dict) and isinstance(item.get("bitcoin"), str):
            txs.append(item["bitcoin"])

    if len(txs) != 2:
        raise MalformedResponseError(f"Expected 2 transactions from prover, got {len(txs)}")

    return txs[0], txs[1]


async def run_charms(args: Sequence[str], timeout: float) -> bytes:
    """Run the charms binary and return its stdout.

    Raises:
        ProverTimeoutError: Process did not finish within ``timeout``
        ProverUnavailableError: Binary not found
        ProverError: Non-zero exit status (message carries stderr)
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ProverUnavailableError(
            f"charms binary not found: {args[0]}. Install it or set CHARMS_BIN."
        ) from e

    name = " ".join(args[1:3])
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        logger.warning("charms.timeout", command=name, timeout=timeout)
        raise ProverTimeoutError(f"charms {name} timed out after {timeout}s") from e

    if process.returncode != 0:
        error = stderr.decode("utf-8", errors="replace").strip()
        logger.error(
            "charms.failed", command=name, returncode=process.returncode, stderr=error
        )
        raise ProverError(f"charms {name} failed: {error}")

    return stdout


class CharmsSpellReader:
    """Decodes the spell embedded in a transaction via ``charms tx show-spell``."""

    def __init__(self, charms_bin: str = "charms", timeout: float = 60.0):
        self.charms_bin = charms_bin
        self.timeout = timeout

    async def show_spell(self, tx_hex: str) -> dict:
        stdout = await run_charms(
            [self.charms_bin, "tx", "show-spell", "--tx", tx_hex, "--mock", "--json"],
            self.timeout,
        )
        try:
            spell = json.loads(stdout)
        except ValueError as e:
            raise MalformedResponseError(f"show-spell returned invalid JSON: {e}") from e

        if not isinstance(spell, dict):
            raise MalformedResponseError("show-spell returned no spell")
        return spell


class CharmsCliProver:
    """Prover running the local charms CLI in mock mode."""

    def __init__(
        self,
        builder: TransitionDescriptorBuilder,
        contract: ContractArtifacts,
        charms_bin: str = "charms",
        timeout: float = 300.0,
    ):
        """
        Initialize CLI prover.

        Args:
            builder: Descriptor builder used to serialise the spell
            contract: Contract artifacts (WASM path passed as --app-bins)
            charms_bin: charms executable name or path
            timeout: Proof timeout in seconds
        """
        self.builder = builder
        self.contract = contract
        self.charms_bin = charms_bin
        self.timeout = timeout

    def command(
        self, spell_path: str, request: TransitionRequest, prev_tx_hexes: Sequence[str]
    ) -> list[str]:
        """Argument vector for ``charms spell prove``."""
        args = [
            self.charms_bin,
            "spell",
            "prove",
            "--spell",
            spell_path,
            "--funding-utxo",
            str(request.funding.outpoint),
            "--funding-utxo-value",
            str(request.funding.value),
            "--change-address",
            request.funding.address,
            "--fee-rate",
            str(request.fee_rate),
            "--chain",
            "bitcoin",
            "--mock",
            "--app-bins",
            str(self.contract.wasm_path),
        ]
        if prev_tx_hexes:
            args.extend(["--prev-txs", ",".join(prev_tx_hexes)])
        return args

    async def prove(
        self, request: TransitionRequest, prev_tx_hexes: Sequence[str]
    ) -> tuple[str, str]:
        spell = self.builder.to_spell(request)

        with tempfile.NamedTemporaryFile(
            "w", suffix=".json", prefix="spell-", delete=False
        ) as spell_file:
            json.dump(spell, spell_file, indent=2)
            spell_path = spell_file.name

        logger.info(
            "prover.cli.proving",
            kind=request.kind.value,
            funding_utxo=str(request.funding.outpoint),
            prev_txs=len(prev_tx_hexes),
        )
        try:
            stdout = await run_charms(
                self.command(spell_path, request, prev_tx_hexes), self.timeout
            )
        finally:
            os.unlink(spell_path)

        try:
            data = json.loads(stdout)
        except ValueError as e:
            raise MalformedResponseError(f"charms spell prove returned invalid JSON: {e}") from e

        commit_hex, spell_hex = parse_prover_output(data)
        logger.info("prover.cli.proved", kind=request.kind.value)
        return commit_hex, spell_hex


class CharmsHttpProver:
    """Prover backed by the Charms prover HTTP service."""

    def __init__(
        self,
        builder: TransitionDescriptorBuilder,
        contract: ContractArtifacts,
        prover_url: str = "http://localhost:17784",
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize HTTP prover.

        Args:
            builder: Descriptor builder used to serialise the request body
            contract: Contract artifacts (binary shipped base64-encoded)
            prover_url: Prover service base URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.builder = builder
        self.contract = contract
        self.prover_url = prover_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def prove(
        self, request: TransitionRequest, prev_tx_hexes: Sequence[str]
    ) -> tuple[str, str]:
        body = self.builder.to_prover_request(request, self.contract.binary_b64, prev_tx_hexes)
        url = f"{self.prover_url}/spells/prove"

        logger.info(
            "prover.http.proving",
            url=url,
            kind=request.kind.value,
            funding_utxo=str(request.funding.outpoint),
        )
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=body)
        except httpx.TimeoutException as e:
            raise ProverTimeoutError(f"Prover timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ProverUnavailableError(f"Failed to reach prover at {url}: {e}") from e

        if not response.is_success:
            logger.error("prover.http.failed", status=response.status_code, body=response.text)
            raise ProverError(f"Prover error ({response.status_code}): {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Prover returned invalid JSON: {e}") from e

        commit_hex, spell_hex = parse_prover_output(data)
        logger.info("prover.http.proved", kind=request.kind.value)
        return commit_hex, spell_hex


def select_prover(
    network: Network,
    settings: Settings,
    builder: TransitionDescriptorBuilder,
    contract: ContractArtifacts,
):
    """Pick the prover for a network: local mock CLI on test, HTTP service otherwise."""
    if network is Network.TEST:
        return CharmsCliProver(
            builder,
            contract,
            charms_bin=settings.charms_bin,
            timeout=settings.prover_timeout_seconds,
        )
    return CharmsHttpProver(
        builder,
        contract,
        prover_url=settings.prover_url,
        timeout=settings.prover_timeout_seconds,
    )


__all__ = [
    "CharmsCliProver",
    "CharmsHttpProver",
    "CharmsSpellReader",
    "parse_prover_output",
    "run_charms",
    "select_prover",
]
