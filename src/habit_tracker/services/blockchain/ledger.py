"""Ledger service - current token state and funding selection.

Reads the token's current on-ledger payload (through the spell extractor)
and picks funding outputs from the node wallet. Stateless: every call is a
fresh query, the ledger is the only source of truth.
"""

from typing import Optional

import structlog

from habit_tracker.models.token import TOKEN_CARRY_SATS, FundingReference, Outpoint
from habit_tracker.services.blockchain.bitcoin_rpc import BitcoinRpcClient, btc_to_sats
from habit_tracker.services.exceptions import NoFundingAvailableError
from habit_tracker.services.tracker.codec import extract_token
from habit_tracker.services.tracker.ports import CurrentToken, SpellReader
from habit_tracker.services.tracker.signing import decode_transaction, output_prevout

logger = structlog.get_logger()


class LedgerService:
    """Ledger queries needed by token transitions."""

    def __init__(self, rpc: BitcoinRpcClient, spell_reader: SpellReader):
        """
        Initialize ledger service.

        Args:
            rpc: Bitcoin Core RPC client (wallet scoped)
            spell_reader: Extractor decoding the spell embedded in a transaction
        """
        self.rpc = rpc
        self.spell_reader = spell_reader

    async def get_current_state(self, token: Outpoint) -> CurrentToken:
        """Read the token state carried by ``token`` and its spending prevout.

        Raises:
            LedgerRpcError: Transaction unknown to the node
            MalformedResponseError: Transaction carries no token charm
            MalformedTransactionError: Output ``token.vout`` does not exist
        """
        logger.info("ledger.reading_token", utxo=str(token))

        raw_tx_hex = await self.rpc.get_raw_transaction_hex(token.txid)
        spell = await self.spell_reader.show_spell(raw_tx_hex)
        state, app_identity, payload = extract_token(spell)
        prevout = output_prevout(decode_transaction(raw_tx_hex), token.vout)

        logger.info(
            "ledger.token_read",
            utxo=str(token),
            habit=state.subject_name,
            sessions=state.progress_count,
            badges=list(state.badges),
        )
        return CurrentToken(
            state=state,
            prevout=prevout,
            raw_tx_hex=raw_tx_hex,
            app_identity=app_identity,
            payload=payload,
        )

    async def list_spendable_funding(
        self, min_value: int, exclude: Optional[Outpoint] = None
    ) -> FundingReference:
        """Pick a wallet output able to fund a transition.

        Outputs carrying exactly the token carry value are token outputs and
        never used as funding; ``exclude`` skips the token being spent.

        Raises:
            NoFundingAvailableError: Nothing qualifies (carries an address to fund)
        """
        utxos = await self.rpc.list_unspent()

        for utxo in utxos:
            outpoint = Outpoint(txid=utxo["txid"], vout=utxo["vout"])
            value = btc_to_sats(utxo["amount"])
            if value == TOKEN_CARRY_SATS or value < min_value:
                continue
            if exclude is not None and outpoint == exclude:
                continue
            if not utxo.get("spendable", True) or not utxo.get("address"):
                continue

            logger.info("ledger.funding_selected", utxo=str(outpoint), value=value)
            return FundingReference(outpoint=outpoint, value=value, address=utxo["address"])

        address = await self.rpc.get_new_address()
        chain = await self.rpc.get_chain()
        logger.warning(
            "ledger.no_funding",
            min_value=min_value,
            candidates=len(utxos),
            fund_address=address,
            chain=chain,
        )
        raise NoFundingAvailableError(address=address, network=chain)
