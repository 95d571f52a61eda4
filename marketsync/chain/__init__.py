"""
Chain access: JSON-RPC gateway, contract ABIs and transaction signing.
"""
