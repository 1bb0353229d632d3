"""
Transaction building, verification and the liquidity position manager
"""
