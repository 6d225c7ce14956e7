"""
PolyLingo Subscription Test Suite

Tests for:
- Plan catalog and snapshot models
- Local store, device fingerprint and device usage metering
- Remote sync and receipt validation clients
- Subscription service (local cache and commit path)
- Entitlement reconciler (initialize, reconcile, purchase, restore)

Run tests with:
    pytest tests/ -v

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
