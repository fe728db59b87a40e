"""
Fixed-point price conversion for Uniswap V3 style pools.

Pools publish ``sqrtPriceX96 = sqrt(token1/token0) * 2**96``. Everything here
is integer-only and mirrors the on-chain arithmetic bit for bit, so that the
off-chain relayer, the relay invariant engine, and the feed contract agree on
every deviation comparison.
"""

UINT256_MAX = 2**256 - 1
UINT160_MAX = 2**160 - 1
Q96 = 2**96
Q192 = 2**192

PRICE_DECIMALS = 6
DEVIATION_DECIMALS = 18
BPS = 10_000


def mul_div(a: int, b: int, denominator: int) -> int:
    """Compute ``floor(a * b / denominator)`` with a 512-bit intermediate.

    Reproduces ``FullMath.mulDiv``: operands are uint256, the product may
    exceed 256 bits, the result may not.

    Raises:
        ArithmeticError: On a zero denominator, negative or oversized operands,
            or a result that does not fit in 256 bits.
    """
    for name, value in (("a", a), ("b", b), ("denominator", denominator)):
        if value < 0 or value > UINT256_MAX:
            raise ArithmeticError(f"mul_div operand {name} out of uint256 range: {value}")
    if denominator == 0:
        raise ArithmeticError("mul_div division by zero")

    result = (a * b) // denominator
    if result > UINT256_MAX:
        raise ArithmeticError("mul_div result overflows uint256")
    return result


def sqrt_price_to_price(
    sqrt_price_x96: int,
    token0_decimals: int,
    token1_decimals: int,
    invert: bool = False,
    output_decimals: int = PRICE_DECIMALS,
) -> int:
    """Convert a sqrt price to an integer price with ``output_decimals`` precision.

    The raw ratio ``sqrt**2 / 2**192`` is rescaled by
    ``10**(token0_decimals - token1_decimals)`` to express token1 per whole
    token0. All scaling happens inside a single floor division, so the result
    is exact up to one final rounding down.

    With ``invert`` the reciprocal (token0 per token1) is taken in the same
    fixed-point base. A zero sqrt price, or a price that floors to zero, yields 0.

    Args:
        sqrt_price_x96: Pool sqrt price in Q64.96 format
        token0_decimals: ERC20 decimals of token0
        token1_decimals: ERC20 decimals of token1
        invert: Return token0 per token1 instead
        output_decimals: Fixed-point precision of the result

    Returns:
        Price scaled by ``10**output_decimals``
    """
    if sqrt_price_x96 < 0 or sqrt_price_x96 > UINT160_MAX:
        raise ArithmeticError(f"sqrt price out of uint160 range: {sqrt_price_x96}")
    if sqrt_price_x96 == 0:
        return 0

    decimal_diff = token0_decimals - token1_decimals
    numerator_scale = 10**output_decimals * 10 ** max(decimal_diff, 0)
    denominator_scale = 10 ** max(-decimal_diff, 0)

    price = mul_div(
        sqrt_price_x96,
        sqrt_price_x96 * numerator_scale,
        Q192 * denominator_scale,
    )

    if invert:
        if price == 0:
            return 0
        return 10 ** (2 * output_decimals) // price
    return price


def deviation_bps(old_sqrt_price_x96: int, new_sqrt_price_x96: int) -> int:
    """Relative change between two sqrt prices in basis points.

    Both values are converted to real prices first (18 decimals, no token
    decimal adjustment since it cancels out of the ratio). Comparing raw sqrt
    values would understate the change quadratically.

    Returns 0 when there is no previous price.
    """
    old_price = sqrt_price_to_price(old_sqrt_price_x96, 0, 0, False, DEVIATION_DECIMALS)
    if old_price == 0:
        return 0
    new_price = sqrt_price_to_price(new_sqrt_price_x96, 0, 0, False, DEVIATION_DECIMALS)
    return abs(new_price - old_price) * BPS // old_price


def format_price(value: int, decimals: int = PRICE_DECIMALS) -> str:
    """Render a fixed-point integer price for logs, e.g. ``1234500 -> '1.234500'``."""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10**decimals)
    if decimals == 0:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{frac:0{decimals}d}"
