"""
lpkit - Meteora DLMM concentrated-liquidity position manager
"""
