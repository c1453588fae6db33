"""
Settlement services

Order lifecycle, Stripe gateway, webhook processing, escrow accounting,
creator withdrawals and the watermark gate, all sharing one LedgerStore.
"""
