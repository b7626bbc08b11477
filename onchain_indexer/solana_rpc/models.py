"""
Data models for the ingestion pipeline.

Wire models mirror the getSignaturesForAddress / getTransaction (jsonParsed)
response fields. Loosely-typed wire variants are resolved once at parse time:
account keys (bare address or {pubkey, signer, ...}) and instruction account
references (numeric index or literal address) are both turned into plain
base58 strings through the transaction's AccountTable.

Derived models (BalanceDelta, TokenTransferChange) are produced by the
normalizer and never read back from the wire.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any

LAMPORTS_PER_SOL = 1_000_000_000
NATIVE_DECIMALS = 9

# Placeholder until resolved against the tracked owner
DIRECTION_UNKNOWN = "unknown"

TRANSFER_TYPE_TRANSFER = "transfer"
TRANSFER_TYPE_MINT = "mint"
TRANSFER_TYPE_BURN = "burn"
TRANSFER_TYPE_UNKNOWN = "unknown"

ASSET_NATIVE = "native"
ASSET_SPL = "spl"

FETCH_ERROR_TRANSPORT = "transport"
FETCH_ERROR_PROTOCOL = "protocol"


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _opt_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def _opt_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _int_list(value: Any, name: str) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{name} must be a list")
    out: list[int] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int):
            raise ValueError(f"{name} must contain integers")
        out.append(item)
    return out


# -----------------------------------------------------------------------------
# Signatures
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class SignatureRecord:
    """One getSignaturesForAddress item. Immutable once stored."""

    signature: str
    block_time: int | None
    """Unix timestamp (seconds); None if the node did not report it."""
    slot: int | None = None

    @classmethod
    def from_rpc_item(cls, item: dict[str, Any]) -> "SignatureRecord":
        """Build from a single getSignaturesForAddress result item."""
        signature = item["signature"]
        if not isinstance(signature, str) or not signature:
            raise ValueError("signature must be a non-empty string")
        return cls(
            signature=signature,
            block_time=_opt_int(item.get("blockTime")),
            slot=_opt_int(item.get("slot")),
        )


# -----------------------------------------------------------------------------
# Account table
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class AccountTable:
    """
    Effective account table of a transaction: explicit account keys, then
    loaded writable addresses, then loaded readonly addresses. Every
    index-based reference in the transaction resolves against this list.
    """

    addresses: tuple[str, ...]
    signer_count: int = 0

    def __len__(self) -> int:
        return len(self.addresses)

    def resolve(self, index: int) -> str | None:
        if 0 <= index < len(self.addresses):
            return self.addresses[index]
        return None

    def resolve_ref(self, ref: Any) -> str | None:
        """Resolve an instruction account reference (index or literal address)."""
        if isinstance(ref, bool):
            return None
        if isinstance(ref, int):
            return self.resolve(ref)
        return _opt_str(ref)

    @classmethod
    def build(
        cls,
        account_keys: list[Any],
        loaded_addresses: "LoadedAddresses | None",
    ) -> "AccountTable":
        keys: list[str] = []
        signers = 0
        for key in account_keys:
            if isinstance(key, str):
                keys.append(key)
            elif isinstance(key, dict) and isinstance(key.get("pubkey"), str):
                keys.append(key["pubkey"])
                if key.get("signer") is True:
                    signers += 1
            else:
                raise ValueError(f"unsupported account key entry: {key!r}")
        if loaded_addresses is not None:
            keys.extend(loaded_addresses.writable)
            keys.extend(loaded_addresses.readonly)
        return cls(addresses=tuple(keys), signer_count=signers)


@dataclass(frozen=True)
class LoadedAddresses:
    """Address lookup table accounts appended after the explicit keys."""

    writable: tuple[str, ...] = ()
    readonly: tuple[str, ...] = ()

    @classmethod
    def from_rpc(cls, raw: Any) -> "LoadedAddresses | None":
        if not isinstance(raw, dict):
            return None
        return cls(
            writable=tuple(a for a in raw.get("writable") or [] if isinstance(a, str)),
            readonly=tuple(a for a in raw.get("readonly") or [] if isinstance(a, str)),
        )


@dataclass(frozen=True)
class MessageHeader:
    num_required_signatures: int
    num_readonly_signed_accounts: int = 0
    num_readonly_unsigned_accounts: int = 0

    @classmethod
    def from_rpc(cls, raw: Any) -> "MessageHeader | None":
        if not isinstance(raw, dict):
            return None
        required = _opt_int(raw.get("numRequiredSignatures"))
        if required is None:
            return None
        return cls(
            num_required_signatures=required,
            num_readonly_signed_accounts=_opt_int(raw.get("numReadonlySignedAccounts")) or 0,
            num_readonly_unsigned_accounts=_opt_int(raw.get("numReadonlyUnsignedAccounts")) or 0,
        )


# -----------------------------------------------------------------------------
# Instructions
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class UiTokenAmount:
    """Token amount as reported by the node: raw integer string plus display fields."""

    amount: str
    decimals: int
    ui_amount: float | None = None
    ui_amount_string: str | None = None

    @classmethod
    def from_rpc(cls, raw: Any) -> "UiTokenAmount | None":
        if not isinstance(raw, dict):
            return None
        amount = raw.get("amount")
        decimals = _opt_int(raw.get("decimals"))
        if isinstance(amount, int) and not isinstance(amount, bool):
            amount = str(amount)
        if not isinstance(amount, str) or decimals is None:
            return None
        return cls(
            amount=amount,
            decimals=decimals,
            ui_amount=_opt_float(raw.get("uiAmount")),
            ui_amount_string=_opt_str(raw.get("uiAmountString")),
        )


@dataclass(frozen=True)
class ParsedInfo:
    """The parsed.info fields used for transfer/mint/burn normalization."""

    token_amount: UiTokenAmount | None = None
    amount: str | None = None
    decimals: int | None = None
    ui_amount: float | None = None
    mint: str | None = None
    authority: str | None = None
    lamports: int | None = None
    source: str | None = None
    destination: str | None = None
    account: str | None = None

    @classmethod
    def from_rpc(cls, raw: dict[str, Any]) -> "ParsedInfo":
        amount = raw.get("amount")
        if isinstance(amount, int) and not isinstance(amount, bool):
            amount = str(amount)
        authority = _opt_str(raw.get("authority")) or _opt_str(raw.get("multisigAuthority"))
        return cls(
            token_amount=UiTokenAmount.from_rpc(raw.get("tokenAmount")),
            amount=amount if isinstance(amount, str) else None,
            decimals=_opt_int(raw.get("decimals")),
            ui_amount=_opt_float(raw.get("uiAmount")),
            mint=_opt_str(raw.get("mint")),
            authority=authority,
            lamports=_opt_int(raw.get("lamports")),
            source=_opt_str(raw.get("source")),
            destination=_opt_str(raw.get("destination")),
            account=_opt_str(raw.get("account")),
        )


@dataclass(frozen=True)
class ParsedInstruction:
    instruction_type: str
    info: ParsedInfo


@dataclass(frozen=True)
class Instruction:
    """
    Top-level or inner instruction. Either parsed (program known to the node,
    typed info + type tag) or unparsed (opaque accounts + data). Only parsed
    instructions take part in normalization.
    """

    program: str | None = None
    program_id: str | None = None
    parsed: ParsedInstruction | None = None
    accounts: tuple[str, ...] = ()
    data: str | None = None
    stack_height: int | None = None

    @property
    def is_parsed(self) -> bool:
        return self.parsed is not None

    @classmethod
    def from_rpc(cls, raw: Any, table: AccountTable) -> "Instruction":
        if not isinstance(raw, dict):
            raise ValueError(f"instruction must be an object, got {type(raw).__name__}")
        program_id = _opt_str(raw.get("programId"))
        if program_id is None:
            idx = _opt_int(raw.get("programIdIndex"))
            if idx is not None:
                program_id = table.resolve(idx)

        parsed: ParsedInstruction | None = None
        parsed_raw = raw.get("parsed")
        # Some programs (e.g. memo) report parsed as a bare string; treat as opaque
        if isinstance(parsed_raw, dict) and isinstance(parsed_raw.get("type"), str):
            info_raw = parsed_raw.get("info")
            parsed = ParsedInstruction(
                instruction_type=parsed_raw["type"],
                info=ParsedInfo.from_rpc(info_raw if isinstance(info_raw, dict) else {}),
            )

        accounts: list[str] = []
        for ref in raw.get("accounts") or []:
            addr = table.resolve_ref(ref)
            if addr is not None:
                accounts.append(addr)

        return cls(
            program=_opt_str(raw.get("program")),
            program_id=program_id,
            parsed=parsed,
            accounts=tuple(accounts),
            data=_opt_str(raw.get("data")),
            stack_height=_opt_int(raw.get("stackHeight")),
        )


@dataclass(frozen=True)
class InnerInstructions:
    """CPI instructions invoked by the top-level instruction at `index`."""

    index: int
    instructions: tuple[Instruction, ...]


@dataclass(frozen=True)
class TokenBalance:
    """pre/postTokenBalances entry, with account_index already resolved."""

    account_index: int
    account_address: str | None
    mint: str
    owner: str | None
    program_id: str | None
    ui_token_amount: UiTokenAmount

    @classmethod
    def from_rpc(cls, raw: Any, table: AccountTable) -> "TokenBalance | None":
        if not isinstance(raw, dict):
            return None
        idx = _opt_int(raw.get("accountIndex"))
        mint = _opt_str(raw.get("mint"))
        amount = UiTokenAmount.from_rpc(raw.get("uiTokenAmount"))
        if idx is None or mint is None or amount is None:
            return None
        return cls(
            account_index=idx,
            account_address=table.resolve(idx),
            mint=mint,
            owner=_opt_str(raw.get("owner")),
            program_id=_opt_str(raw.get("programId")),
            ui_token_amount=amount,
        )


# -----------------------------------------------------------------------------
# Raw transaction
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class RawTransaction:
    """Decoded getTransaction (jsonParsed) result."""

    slot: int
    block_time: int | None
    signatures: tuple[str, ...]
    account_table: AccountTable
    header: MessageHeader | None
    instructions: tuple[Instruction, ...]
    inner_instructions: tuple[InnerInstructions, ...]
    pre_balances: tuple[int, ...]
    post_balances: tuple[int, ...]
    pre_token_balances: tuple[TokenBalance, ...]
    post_token_balances: tuple[TokenBalance, ...]
    loaded_addresses: LoadedAddresses | None
    err: Any
    fee: int
    compute_units_consumed: int | None

    @property
    def signature(self) -> str:
        return self.signatures[0] if self.signatures else ""

    @property
    def account_keys(self) -> tuple[str, ...]:
        return self.account_table.addresses

    @property
    def succeeded(self) -> bool:
        return self.err is None

    @property
    def num_signers(self) -> int:
        if self.header is not None:
            return self.header.num_required_signatures
        if self.account_table.signer_count:
            return self.account_table.signer_count
        return len(self.signatures)

    @property
    def num_instructions(self) -> int:
        return len(self.instructions)

    def err_json(self) -> str | None:
        return json.dumps(self.err, sort_keys=True) if self.err is not None else None

    @classmethod
    def from_rpc(cls, result: dict[str, Any]) -> "RawTransaction":
        """
        Decode a getTransaction result object. Raises ValueError/KeyError/TypeError
        when required structure is missing; the caller folds those into a
        protocol failure for the signature.
        """
        if not isinstance(result, dict):
            raise ValueError("transaction result must be an object")
        tx_obj = result["transaction"]
        meta = result["meta"]
        if not isinstance(tx_obj, dict) or not isinstance(meta, dict):
            raise ValueError("transaction and meta must be objects")
        message = tx_obj["message"]
        if not isinstance(message, dict):
            raise ValueError("transaction.message must be an object")

        slot = _opt_int(result.get("slot"))
        if slot is None:
            raise ValueError("slot missing")
        fee = _opt_int(meta.get("fee"))
        if fee is None:
            raise ValueError("meta.fee missing")

        loaded = LoadedAddresses.from_rpc(meta.get("loadedAddresses"))
        account_keys = message.get("accountKeys")
        if not isinstance(account_keys, list):
            raise ValueError("message.accountKeys must be a list")
        table = AccountTable.build(account_keys, loaded)

        instructions = tuple(
            Instruction.from_rpc(ix, table) for ix in message.get("instructions") or []
        )
        inner: list[InnerInstructions] = []
        for block in meta.get("innerInstructions") or []:
            if not isinstance(block, dict):
                continue
            index = _opt_int(block.get("index"))
            if index is None:
                continue
            inner.append(
                InnerInstructions(
                    index=index,
                    instructions=tuple(
                        Instruction.from_rpc(ix, table) for ix in block.get("instructions") or []
                    ),
                )
            )

        def _token_balances(key: str) -> tuple[TokenBalance, ...]:
            out = []
            for entry in meta.get(key) or []:
                tb = TokenBalance.from_rpc(entry, table)
                if tb is not None:
                    out.append(tb)
            return tuple(out)

        signatures = tuple(s for s in tx_obj.get("signatures") or [] if isinstance(s, str) and s)
        if not signatures:
            raise ValueError("transaction.signatures missing")
        return cls(
            slot=slot,
            block_time=_opt_int(result.get("blockTime")),
            signatures=signatures,
            account_table=table,
            header=MessageHeader.from_rpc(message.get("header")),
            instructions=instructions,
            inner_instructions=tuple(inner),
            pre_balances=tuple(_int_list(meta.get("preBalances"), "preBalances")),
            post_balances=tuple(_int_list(meta.get("postBalances"), "postBalances")),
            pre_token_balances=_token_balances("preTokenBalances"),
            post_token_balances=_token_balances("postTokenBalances"),
            loaded_addresses=loaded,
            err=meta.get("err"),
            fee=fee,
            compute_units_consumed=_opt_int(meta.get("computeUnitsConsumed")),
        )


# -----------------------------------------------------------------------------
# Derived records
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class BalanceDelta:
    """Lamport change of one account. Positive delta = lamports left the account."""

    account_address: str
    delta: int


@dataclass(frozen=True)
class TokenAccountMeta:
    owner: str | None
    mint: str
    decimals: int


@dataclass(frozen=True)
class TokenTransferChange:
    """One recognized transfer/mint/burn instruction (top-level or inner)."""

    amount_raw: int
    """Base units; never scaled."""
    transfer_type: str
    asset_type: str
    instruction_idx: int
    token_mint: str | None = None
    token_program: str | None = None
    source_owner: str | None = None
    destination_owner: str | None = None
    source_token_account: str | None = None
    destination_token_account: str | None = None
    amount_ui: float | None = None
    decimals: int | None = None
    direction: str = DIRECTION_UNKNOWN
    authority: str | None = None
    inner_idx: int | None = None

    def with_direction(self, direction: str) -> "TokenTransferChange":
        return replace(self, direction=direction)


@dataclass
class IndexedTransaction:
    """
    A fetched transaction together with the records derived from it.

    `signature` is the signature the transaction was requested by; stored rows
    are keyed by it. Defaults to the first signature in the response.
    """

    raw: RawTransaction
    balance_deltas: list[BalanceDelta] = field(default_factory=list)
    token_transfers: list[TokenTransferChange] = field(default_factory=list)
    signature: str = ""

    def __post_init__(self) -> None:
        if not self.signature:
            self.signature = self.raw.signature


@dataclass(frozen=True)
class TransactionFetchError:
    """Typed failure for one signature. Returned, never raised."""

    signature: str
    message: str
    kind: str = FETCH_ERROR_PROTOCOL
    status_code: int | None = None
    rpc_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "message": self.message,
            "kind": self.kind,
            "status_code": self.status_code,
            "rpc_code": self.rpc_code,
        }


@dataclass
class TransactionBatchResult:
    """Outcome of one BatchFetcher pass. In-memory only."""

    succeeded: list[IndexedTransaction] = field(default_factory=list)
    processed_signatures: list[str] = field(default_factory=list)
    failed_signatures: list[str] = field(default_factory=list)
    errors: list[TransactionFetchError] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return bool(self.errors)
