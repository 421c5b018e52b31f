"""
Key derivation, address tracking, output tracking and transaction building.
"""
