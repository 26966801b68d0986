"""
Keys, descriptors, transactions and the descriptor wallet.
"""
