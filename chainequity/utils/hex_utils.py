"""
Hex, byte and address normalization helpers.
Node transports return the same fields as bytes, HexBytes or strings
depending on the provider, so everything is folded into lowercase 0x strings
before it reaches the decoder or the store.
"""

from typing import Union

from eth_utils import is_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def bytes_to_hex_str_auto(byte_arr: Union[bytes, str]) -> str:
    """
    Convert a byte array to a lowercase 0x-prefixed hex string
    with intelligent conversion of bytes and string representations.

    :param byte_arr: The byte array to convert.
    :return: The resulting hex string.
    """
    if isinstance(byte_arr, (bytes, bytearray)):
        hex_str = bytes(byte_arr).hex()
    else:
        hex_str = str(byte_arr)
    hex_str = hex_str.lower()
    if hex_str.startswith("0x"):
        return hex_str
    return "0x" + hex_str


def hex_str_to_bytes(hex_str: str) -> bytes:
    """
    Convert a hex string, with or without the 0x prefix, to a byte array.

    :param hex_str: The hex string to convert.
    :return: The resulting byte array.
    """
    if hex_str.startswith(("0x", "0X")):
        hex_str = hex_str[2:]
    return bytes.fromhex(hex_str)


def to_int(value: Union[int, str, bytes]) -> int:
    """
    Convert a quantity returned by a node to an integer.
    JSON-RPC quantities are hex strings, web3 formatters return ints.

    :param value: The value to convert.
    :return: The resulting integer.
    """
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    if value.startswith(("0x", "0X")):
        return int(value, 16)
    return int(value)


def normalize_address(address: str) -> str:
    """
    Return the canonical lowercase form of an address.

    :param address: The address in any case.
    :return: The lowercase address.
    """
    if not is_address(address):
        raise ValueError(f"Invalid address: {address}")
    return address.lower()

