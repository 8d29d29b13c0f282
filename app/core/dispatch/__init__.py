# app/core/dispatch/__init__.py
"""
Dispatch core: delivery jobs from payment to proof of delivery.

Modules:
- ``geo``: distance, range matching, coordinate obfuscation
- ``lifecycle``: status/state pairs and the named transitions
- ``reschedule``: bounded agent reschedules, forced failure at the cap
- ``authorization``: edit/delete permissions with human-readable reasons
- ``proof_of_delivery``: secret code generation and the delivery handshake
- ``subscriptions``: live change feeds, at most one per key
- ``engine``: ``DispatchEngine`` composition root

Core code must NOT import transport modules or asyncpg; persistence is
reached only through the protocols in ``ports``.
"""
