"""
Personal Health Sync - Offline-first synchronization and local encryption core.

Keeps blood pressure measurements and context factors durable on the device,
queues pending mutations while offline, delivers them when connectivity
returns, and encrypts the persisted records under a user passphrase.
"""

__version__ = "0.1.0"
