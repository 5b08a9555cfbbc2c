from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

from eth_abi import encode, decode
from hexbytes import HexBytes
from web3 import Web3

HOP_TYPE = "(address,address,uint8,uint24,uint256,bool)"
PARAMS_TYPE = f"(address,address,uint256,bytes,uint256,address[],{HOP_TYPE}[][])"


@dataclass
class SwapHop:
    token_in: str
    token_out: str
    router_index: int
    fee: int
    amount_in: int
    stable: bool

    def __post_init__(self):
        self.token_in = Web3.to_checksum_address(self.token_in)
        self.token_out = Web3.to_checksum_address(self.token_out)

    def as_tuple(self):
        return (self.token_in, self.token_out, self.router_index, self.fee, self.amount_in, self.stable)


@dataclass
class LiquidationParams:
    """
    Flash-loan payload decoded by the settlement contract.
    Exactly one execution path is meaningful per call: `swap_instruction` for the
    opaque aggregator calldata entry point, `hops` (+ `path_tokens`) for the hop entry point.
    """
    user: str
    collateral_asset: str
    debt_to_cover: int
    swap_instruction: bytes = b""
    min_amount_out: int = 0
    path_tokens: List[str] = field(default_factory=list)
    hops: List[List[SwapHop]] = field(default_factory=list)

    def __post_init__(self):
        self.user = Web3.to_checksum_address(self.user)
        self.collateral_asset = Web3.to_checksum_address(self.collateral_asset)
        self.swap_instruction = bytes(HexBytes(self.swap_instruction))
        self.path_tokens = [Web3.to_checksum_address(t) for t in self.path_tokens]

    @property
    def uses_calldata(self):
        return len(self.swap_instruction) > 0


def encode_params(params: LiquidationParams) -> HexBytes:
    hops = [[hop.as_tuple() for hop in allocations] for allocations in params.hops]
    return HexBytes(encode([PARAMS_TYPE], [(
        params.user,
        params.collateral_asset,
        params.debt_to_cover,
        params.swap_instruction,
        params.min_amount_out,
        params.path_tokens,
        hops,
    )]))


def decode_params(data) -> LiquidationParams:
    (user, collateral, debt_to_cover, instruction, min_out, tokens, hops), = decode([PARAMS_TYPE], bytes(HexBytes(data)))
    return LiquidationParams(
        user=user,
        collateral_asset=collateral,
        debt_to_cover=debt_to_cover,
        swap_instruction=instruction,
        min_amount_out=min_out,
        path_tokens=list(tokens),
        hops=[[SwapHop(*hop) for hop in allocations] for allocations in hops],
    )


def to_raw_amount(amount, decimals: int) -> int:
    """Human decimal string -> integer base units, truncating excess precision."""
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def prepare_hops(api_response) -> List[List[SwapHop]]:
    """Convert an aggregator bestPath (human-readable amounts) into on-chain hop allocations."""
    token_info = api_response["tokenInfo"]
    decimals = {}
    for key in ("tokenIn", "tokenOut", "intermediate"):
        info = token_info.get(key)
        if info:
            decimals[Web3.to_checksum_address(info["address"])] = int(info["decimals"])

    hops = []
    for hop in api_response["bestPath"]["hop"]:
        allocations = []
        for alloc in hop["allocations"]:
            token_in = Web3.to_checksum_address(alloc["tokenIn"])
            if token_in not in decimals:
                raise ValueError(f"Missing decimals for tokenIn {token_in}")
            allocations.append(SwapHop(
                token_in=token_in,
                token_out=alloc["tokenOut"],
                router_index=int(alloc["routerIndex"]),
                fee=int(alloc["fee"]),
                amount_in=to_raw_amount(alloc["amountIn"], decimals[token_in]),
                stable=bool(alloc["stable"]),
            ))
        hops.append(allocations)
    return hops


def path_tokens(hops: List[List[SwapHop]]) -> List[str]:
    if not hops or not hops[0]:
        return []
    tokens = [hops[0][0].token_in]
    for allocations in hops:
        tokens.append(allocations[0].token_out)
    return tokens
