from __future__ import annotations

from typing import Any, List, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

MAX_UINT256 = 2**256 - 1
MAX_UINT160 = 2**160 - 1
ZERO_BYTES32 = b"\x00" * 32
SINGLE_DEFAULT_MODE = ZERO_BYTES32

DELEGATION_TUPLE = "(address,address,bytes32,(address,bytes,bytes)[],uint256,bytes)"

ERROR_SELECTORS = {
    "0xd81b2f2e": "CaveatViolated - A delegation caveat enforcement failed",
    "0x155ff427": "DelegationNotFound - Delegation hash not registered",
    "0x3a91a018": "ExecutionFailed - Generic execution failure in DelegationManager",
    "0x00000000": "GenericRevert - Execution reverted without reason",
    "0x08c379a0": "Error(string) - Standard revert with message",
    "0x4e487b71": "Panic - Solidity panic (overflow, division by zero, etc)",
}


def selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def encode_function_call(signature: str, arg_types: List[str], args: Sequence[Any]) -> str:
    return "0x" + (selector(signature) + abi_encode(arg_types, list(args))).hex()


def hex_to_bytes(value: str | bytes | None) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


def decode_result(types: List[str], data: str) -> Tuple[Any, ...]:
    return abi_decode(types, hex_to_bytes(data))


def checksum(address: str) -> str:
    return to_checksum_address(address)


# ERC20 / Permit2 calldata


def erc20_balance_of(owner: str) -> str:
    return encode_function_call("balanceOf(address)", ["address"], [checksum(owner)])


def erc20_allowance(owner: str, spender: str) -> str:
    return encode_function_call("allowance(address,address)", ["address", "address"], [checksum(owner), checksum(spender)])


def erc20_approve(spender: str, amount: int = MAX_UINT256) -> str:
    return encode_function_call("approve(address,uint256)", ["address", "uint256"], [checksum(spender), amount])


def permit2_allowance(owner: str, token: str, spender: str) -> str:
    return encode_function_call(
        "allowance(address,address,address)",
        ["address", "address", "address"],
        [checksum(owner), checksum(token), checksum(spender)],
    )


def permit2_approve(token: str, spender: str, amount: int, expiration: int) -> str:
    return encode_function_call(
        "approve(address,address,uint160,uint48)",
        ["address", "address", "uint160", "uint48"],
        [checksum(token), checksum(spender), amount, expiration],
    )


# Delegation framework


def _delegation_tuple(delegation: dict) -> tuple:
    caveats = [
        (checksum(c["enforcer"]), hex_to_bytes(c.get("terms") or "0x"), hex_to_bytes(c.get("args") or "0x"))
        for c in delegation.get("caveats") or []
    ]
    authority = hex_to_bytes(delegation.get("authority") or "0x" + "ff" * 32)
    salt = delegation.get("salt") or 0
    if isinstance(salt, str):
        salt = int(salt, 16) if salt.startswith("0x") else int(salt)
    return (
        checksum(delegation["delegate"]),
        checksum(delegation["delegator"]),
        authority.rjust(32, b"\x00"),
        caveats,
        int(salt),
        hex_to_bytes(delegation.get("signature")),
    )


def encode_single_execution(target: str, value: int, call_data: str) -> bytes:
    return hex_to_bytes(checksum(target)) + int(value).to_bytes(32, "big") + hex_to_bytes(call_data)


def encode_redeem_delegations(delegation: dict, target: str, value: int, call_data: str) -> str:
    """Calldata for DelegationManager.redeemDelegations with one delegation chain and one execution."""
    permission_context = abi_encode([f"{DELEGATION_TUPLE}[]"], [[_delegation_tuple(delegation)]])
    execution = encode_single_execution(target, value, call_data)
    return encode_function_call(
        "redeemDelegations(bytes[],bytes32[],bytes[])",
        ["bytes[]", "bytes32[]", "bytes[]"],
        [[permission_context], [SINGLE_DEFAULT_MODE], [execution]],
    )


def decode_revert(data: str | None) -> str:
    if not data or len(data) < 10:
        return "Unknown error"
    sel = data[:10].lower()
    if sel == "0xd81b2f2e" and len(data) >= 74:
        index = int(data[66:74], 16)
        return f"CaveatViolated - Caveat at index {index} failed enforcement"
    if sel == "0x08c379a0":
        try:
            (reason,) = abi_decode(["string"], hex_to_bytes(data)[4:])
            return f"Error(string) - {reason}"
        except DecodingError:
            return ERROR_SELECTORS[sel]
    return ERROR_SELECTORS.get(sel, f"Unknown error selector: {sel}")


__all__ = [
    "ERROR_SELECTORS",
    "MAX_UINT160",
    "MAX_UINT256",
    "checksum",
    "decode_result",
    "decode_revert",
    "encode_function_call",
    "encode_redeem_delegations",
    "encode_single_execution",
    "erc20_allowance",
    "erc20_approve",
    "erc20_balance_of",
    "hex_to_bytes",
    "permit2_allowance",
    "permit2_approve",
    "selector",
]
