"""
Transaction normalizer: raw Solana transactions to balance deltas and token transfers.

Pure functions, no I/O. Two independent derivations over one RawTransaction:

- balance deltas: pre/post lamport balances zipped against the effective
  account table;
- token transfers: a token-account side index (owner/mint/decimals from the
  pre/post token balance snapshots) followed by a walk over every parsed
  top-level and inner instruction.

Only System Program transfers and SPL Token / Token-2022 transfer, mint and
burn instructions are recognized; everything else is ignored.
"""

from __future__ import annotations

import re
from typing import Any

from onchain_indexer.indexer_logging import get_logger, mask_addr
from onchain_indexer.solana_rpc.models import (
    ASSET_NATIVE,
    ASSET_SPL,
    DIRECTION_UNKNOWN,
    LAMPORTS_PER_SOL,
    NATIVE_DECIMALS,
    TRANSFER_TYPE_BURN,
    TRANSFER_TYPE_MINT,
    TRANSFER_TYPE_TRANSFER,
    BalanceDelta,
    IndexedTransaction,
    Instruction,
    RawTransaction,
    TokenAccountMeta,
    TokenTransferChange,
)

logger = get_logger(__name__)

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"

_SYSTEM_PROGRAM_NAMES = frozenset({"system"})
_SPL_PROGRAM_NAMES = frozenset({"spl-token", "spl-token-2022"})
_SPL_PROGRAM_IDS = frozenset({TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID})

# parsed.type -> normalized transfer_type
TRANSFER_TYPES = {
    "transfer": TRANSFER_TYPE_TRANSFER,
    "transferChecked": TRANSFER_TYPE_TRANSFER,
    "mintTo": TRANSFER_TYPE_MINT,
    "mintToChecked": TRANSFER_TYPE_MINT,
    "burn": TRANSFER_TYPE_BURN,
    "burnChecked": TRANSFER_TYPE_BURN,
}

_I128_MIN = -(2**127)
_I128_MAX = 2**127 - 1
_INT_RE = re.compile(r"[+-]?[0-9]+")


def parse_amount_raw(value: Any) -> int | None:
    """Parse a base-unit amount string into a signed 128-bit int; None if unparseable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        n = value
    elif isinstance(value, str) and _INT_RE.fullmatch(value):
        n = int(value)
    else:
        return None
    if not (_I128_MIN <= n <= _I128_MAX):
        return None
    return n


# -----------------------------------------------------------------------------
# Balance deltas
# -----------------------------------------------------------------------------


def compute_balance_deltas(tx: RawTransaction, log: Any = None) -> list[BalanceDelta]:
    """
    One BalanceDelta per account whose lamport balance changed, delta = pre - post.

    When the balance arrays and the account table disagree in length, only the
    overlapping prefix is used and a warning is logged.
    """
    log = log or logger
    table = tx.account_table
    pre, post = tx.pre_balances, tx.post_balances
    if len(pre) != len(table) or len(post) != len(table):
        log.warning(
            "balance_length_mismatch",
            signature=mask_addr(tx.signature),
            pre_len=len(pre),
            post_len=len(post),
            keys_len=len(table),
        )
    deltas: list[BalanceDelta] = []
    for i, (before, after) in enumerate(zip(pre, post)):
        diff = before - after
        if diff == 0:
            continue
        address = table.resolve(i)
        if address is None:
            continue
        deltas.append(BalanceDelta(account_address=address, delta=diff))
    return deltas


# -----------------------------------------------------------------------------
# Token transfers
# -----------------------------------------------------------------------------


def build_token_account_index(tx: RawTransaction) -> dict[str, TokenAccountMeta]:
    """token account address -> {owner, mint, decimals} from pre then post token balances."""
    index: dict[str, TokenAccountMeta] = {}
    for balance in (*tx.pre_token_balances, *tx.post_token_balances):
        if balance.account_address is None:
            continue
        index[balance.account_address] = TokenAccountMeta(
            owner=balance.owner,
            mint=balance.mint,
            decimals=balance.ui_token_amount.decimals,
        )
    return index


def classify_program(instruction: Instruction) -> str | None:
    """Return ASSET_NATIVE / ASSET_SPL for recognized programs, None otherwise."""
    program_id = instruction.program_id
    program = instruction.program
    if program_id in _SPL_PROGRAM_IDS or program in _SPL_PROGRAM_NAMES:
        return ASSET_SPL
    if program_id == SYSTEM_PROGRAM_ID or program in _SYSTEM_PROGRAM_NAMES:
        return ASSET_NATIVE
    return None


def _lookup(
    index: dict[str, TokenAccountMeta],
    *addresses: str | None,
) -> TokenAccountMeta | None:
    for addr in addresses:
        if addr is not None and addr in index:
            return index[addr]
    return None


def normalize_instruction(
    instruction: Instruction,
    instruction_idx: int,
    inner_idx: int | None,
    token_accounts: dict[str, TokenAccountMeta],
) -> TokenTransferChange | None:
    """Turn one parsed transfer/mint/burn instruction into a TokenTransferChange, or None."""
    parsed = instruction.parsed
    if parsed is None:
        return None
    raw_type = parsed.instruction_type
    transfer_type = TRANSFER_TYPES.get(raw_type)
    if transfer_type is None:
        return None
    asset_type = classify_program(instruction)
    if asset_type is None:
        return None
    info = parsed.info

    if asset_type == ASSET_NATIVE:
        if info.lamports is None:
            return None
        return TokenTransferChange(
            amount_raw=info.lamports,
            amount_ui=info.lamports / LAMPORTS_PER_SOL,
            decimals=NATIVE_DECIMALS,
            transfer_type=transfer_type,
            asset_type=ASSET_NATIVE,
            source_owner=info.source,
            destination_owner=info.destination,
            direction=DIRECTION_UNKNOWN,
            authority=info.authority,
            instruction_idx=instruction_idx,
            inner_idx=inner_idx,
        )

    if info.token_amount is not None:
        amount_raw = parse_amount_raw(info.token_amount.amount)
        amount_ui = info.token_amount.ui_amount
        decimals: int | None = info.token_amount.decimals
    elif info.amount is not None:
        amount_raw = parse_amount_raw(info.amount)
        amount_ui = info.ui_amount
        decimals = info.decimals
    else:
        return None
    if amount_raw is None:
        return None
    token_mint = info.mint

    source = info.source
    destination = info.destination
    if transfer_type == TRANSFER_TYPE_MINT:
        destination = info.account or destination
    elif transfer_type == TRANSFER_TYPE_BURN:
        source = info.account or source

    source_meta = _lookup(token_accounts, source)
    destination_meta = _lookup(token_accounts, destination)
    either = source_meta or destination_meta
    if token_mint is None and either is not None:
        token_mint = either.mint
    if decimals is None and either is not None:
        decimals = either.decimals
    if amount_ui is None and decimals is not None:
        amount_ui = amount_raw / (10**decimals)

    return TokenTransferChange(
        amount_raw=amount_raw,
        amount_ui=amount_ui,
        decimals=decimals,
        transfer_type=transfer_type,
        asset_type=ASSET_SPL,
        token_mint=token_mint,
        token_program=instruction.program_id,
        source_token_account=source,
        destination_token_account=destination,
        source_owner=source_meta.owner if source_meta else None,
        destination_owner=destination_meta.owner if destination_meta else None,
        direction=DIRECTION_UNKNOWN,
        authority=info.authority,
        instruction_idx=instruction_idx,
        inner_idx=inner_idx,
    )


def infer_token_transfers(tx: RawTransaction) -> list[TokenTransferChange]:
    """Walk top-level then inner instructions; one record per recognized instruction."""
    token_accounts = build_token_account_index(tx)
    out: list[TokenTransferChange] = []
    for idx, instruction in enumerate(tx.instructions):
        change = normalize_instruction(instruction, idx, None, token_accounts)
        if change is not None:
            out.append(change)
    for block in tx.inner_instructions:
        for inner_idx, instruction in enumerate(block.instructions):
            change = normalize_instruction(instruction, block.index, inner_idx, token_accounts)
            if change is not None:
                out.append(change)
    return out


def normalize(tx: RawTransaction, log: Any = None, signature: str | None = None) -> IndexedTransaction:
    """Compute both derivations for one transaction, keyed by the requested signature."""
    return IndexedTransaction(
        raw=tx,
        balance_deltas=compute_balance_deltas(tx, log),
        token_transfers=infer_token_transfers(tx),
        signature=signature or tx.signature,
    )


# -----------------------------------------------------------------------------
# Direction relative to the tracked owner
# -----------------------------------------------------------------------------

DIRECTION_IN = "in"
DIRECTION_OUT = "out"
DIRECTION_SELF = "self"


def resolve_direction(change: TokenTransferChange, tracked_owner: str) -> TokenTransferChange:
    """Return a copy of change with direction set relative to tracked_owner."""
    is_source = change.source_owner == tracked_owner
    is_destination = change.destination_owner == tracked_owner
    if is_source and is_destination:
        direction = DIRECTION_SELF
    elif is_source:
        direction = DIRECTION_OUT
    elif is_destination:
        direction = DIRECTION_IN
    else:
        direction = DIRECTION_UNKNOWN
    return change.with_direction(direction)
