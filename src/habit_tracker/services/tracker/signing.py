"""Signing plan for a commit/spell transaction pair.

The prover returns two unsigned transactions. The commit transaction spends
the funding output; its sole relevant output is in turn spent by the spell
transaction. Wallet signing needs, for every input, the script and amount of
the output it spends:

- Commit input 0 spends the funding output: only the caller's ledger view
  knows its script/amount.
- Genesis spell: input 0 spends commit output 0 (derivable from the commit
  transaction itself).
- Update spell: input 0 spends the previous token output (caller supplied,
  fetched from the already confirmed transaction), input 1 spends commit
  output 0 (derivable).

Inputs must be signed in the exact order the spell transaction lists them,
so the decoded spell is checked against that order before a plan is handed
out.
"""

from typing import Optional

import structlog
from bitcoin.core import CTransaction, b2lx, b2x
from bitcoin.core.serialize import SerializationError

from habit_tracker.models.settlement import (
    COMMIT_TX_INDEX,
    SPELL_TX_INDEX,
    SettlementPlan,
    SigningDescriptor,
)
from habit_tracker.models.token import Outpoint, Prevout
from habit_tracker.models.transition import TransitionKind
from habit_tracker.services.exceptions import MalformedTransactionError

logger = structlog.get_logger()


def decode_transaction(tx_hex: str) -> CTransaction:
    """Deserialize a raw transaction.

    Raises:
        MalformedTransactionError: If the hex is not a valid transaction
    """
    try:
        return CTransaction.deserialize(bytes.fromhex(tx_hex))
    except (ValueError, SerializationError) as e:
        raise MalformedTransactionError(f"Cannot decode transaction: {e}") from e


def txid_of(tx: CTransaction) -> str:
    """Display-order txid (witness excluded)."""
    return b2lx(tx.GetTxid())


def input_outpoint(tx: CTransaction, index: int) -> Outpoint:
    prevout = tx.vin[index].prevout
    return Outpoint(txid=b2lx(prevout.hash), vout=prevout.n)


def output_prevout(tx: CTransaction, vout: int) -> Prevout:
    """Prevout describing output ``vout`` of ``tx`` for a spender."""
    if vout >= len(tx.vout):
        raise MalformedTransactionError(
            f"Transaction {txid_of(tx)} has no output {vout} (outputs: {len(tx.vout)})"
        )
    out = tx.vout[vout]
    return Prevout(
        outpoint=Outpoint(txid=txid_of(tx), vout=vout),
        script_pubkey_hex=b2x(bytes(out.scriptPubKey)),
        amount_sats=out.nValue,
    )


def build_signing_plan(
    commit_tx_hex: str,
    spell_tx_hex: str,
    funding: Prevout,
    previous_token: Optional[Prevout] = None,
) -> SettlementPlan:
    """Derive the ordered signing descriptors for a commit/spell pair.

    Args:
        commit_tx_hex: Unsigned commit transaction from the prover
        spell_tx_hex: Unsigned spell transaction from the prover
        funding: Funding output spent by the commit transaction
        previous_token: Token output spent by the spell (updates only)

    Returns:
        SettlementPlan with 2 descriptors (genesis) or 3 (update)

    Raises:
        MalformedTransactionError: Undecodable transactions, or inputs that do
            not spend the expected outputs in the expected order
    """
    commit_tx = decode_transaction(commit_tx_hex)
    spell_tx = decode_transaction(spell_tx_hex)
    commit_txid = txid_of(commit_tx)

    if not commit_tx.vin:
        raise MalformedTransactionError(f"Commit transaction {commit_txid} has no inputs")
    commit_input = input_outpoint(commit_tx, 0)
    if commit_input != funding.outpoint:
        raise MalformedTransactionError(
            f"Commit input 0 spends {commit_input}, expected funding output {funding.outpoint}"
        )

    commit_output = output_prevout(commit_tx, 0)

    kind = TransitionKind.GENESIS if previous_token is None else TransitionKind.UPDATE
    if previous_token is None:
        expected_spends = [commit_output]
    else:
        expected_spends = [previous_token, commit_output]

    if len(spell_tx.vin) != len(expected_spends):
        raise MalformedTransactionError(
            f"{kind.value} spell transaction must have {len(expected_spends)} inputs, "
            f"got {len(spell_tx.vin)}"
        )

    descriptors = [
        SigningDescriptor(tx_index=COMMIT_TX_INDEX, input_index=0, prevout=funding),
    ]
    for index, expected in enumerate(expected_spends):
        actual = input_outpoint(spell_tx, index)
        if actual != expected.outpoint:
            raise MalformedTransactionError(
                f"Spell input {index} spends {actual}, expected {expected.outpoint}"
            )
        descriptors.append(
            SigningDescriptor(tx_index=SPELL_TX_INDEX, input_index=index, prevout=expected)
        )

    logger.debug(
        "signing_plan.built",
        kind=kind.value,
        commit_txid=commit_txid,
        descriptor_count=len(descriptors),
    )

    return SettlementPlan(
        kind=kind,
        commit_tx_hex=commit_tx_hex,
        spell_tx_hex=spell_tx_hex,
        commit_txid=commit_txid,
        descriptors=tuple(descriptors),
    )
