from decimal import localcontext

from amounts import WEI_CONTEXT, ZERO, to_amount

ETH_DECIMALS = 18

# (last height of the era or None for open-ended, base reward in ETH)
# Frontier/Homestead, Byzantium (EIP-649), Constantinople (EIP-1234)
REWARD_ERAS = [
    (4_369_999, 5),
    (7_279_999, 3),
    (None, 2),
]


def base_block_reward(block_number: int):
    """Base reward in wei for the era that contains block_number."""
    for last_height, reward in REWARD_ERAS:
        if last_height is None or block_number <= last_height:
            return to_amount(reward).scaleb(ETH_DECIMALS, WEI_CONTEXT)
    raise ValueError(f"No reward era for block {block_number}")


def calc_burnt_amount(gas_used, base_fee_per_gas):
    # burnt = gasUsed * baseFeePerGas (EIP-1559 blocks only)
    if base_fee_per_gas is None:
        return ZERO
    with localcontext(WEI_CONTEXT):
        return to_amount(gas_used) * to_amount(base_fee_per_gas)


def calc_block_reward(block_number: int, gas_used, base_fee_per_gas, fees_sum):
    """
    blockReward = baseReward + fees - burnt

    Pure function: no I/O, exact decimals only.
    """
    base = base_block_reward(block_number)
    burnt = calc_burnt_amount(gas_used, base_fee_per_gas)
    with localcontext(WEI_CONTEXT):
        return base + to_amount(fees_sum) - burnt
