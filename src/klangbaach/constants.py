from __future__ import annotations

# Uniswap v2 pair events we aggregate
SWAP_SIGNATURE = (
    "Swap(address indexed sender, uint256 amount0In, uint256 amount1In, "
    "uint256 amount0Out, uint256 amount1Out, address indexed to)"
)
SYNC_SIGNATURE = "Sync(uint112 reserve0, uint112 reserve1)"

SWAP_EVENT = "Swap"
SYNC_EVENT = "Sync"

# Canonical pair address of the default run (WETH/USDC on Ethereum mainnet)
DEFAULT_PAIR_ADDRESS = "0xB4e16d0168e52d35CaCD2c6185b44281Ec28C9Dc"
DEFAULT_START_HEIGHT = 10_019_997
