"""Common utility functions for the raffle backend."""

from web3 import Web3


def shorten_eth_address(address: str) -> str:
    """Shorten an Ethereum address for display: '0x123456...abcd'.
    Returns the first 6 and last 4 characters, separated by '...'.
    Handles addresses with or without '0x' prefix.
    """
    if not address:
        return ""
    addr = address.lower()
    if addr.startswith("0x"):
        addr = addr[2:]
    if len(addr) < 10:
        return f"0x{addr}"
    return f"0x{addr[:6]}...{addr[-4:]}"


def normalize_address(address: str) -> str:
    """Return the checksum form of a hex address, or the input unchanged.

    Participants in the in-memory treasury may be plain labels, so only
    strings that parse as 20-byte hex addresses are checksummed.
    """
    if isinstance(address, str) and Web3.is_address(address):
        return Web3.to_checksum_address(address)
    return address
