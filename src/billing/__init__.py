"""
Billing and entitlements.

- plans: immutable plan catalog
- usage / entitlements: quota counting and allow/deny decisions
- orders: gateway order creation (plans, recurring, storefront)
- verifier: signature check and exactly-once payment application
- subscription_store: one current subscription per user
- reconciliation: authoritative sync with the gateway
- webhooks: body-signed gateway events
- errors: error taxonomy (imported by gateways, so this package
  re-exports nothing to keep imports acyclic)
"""
