"""
Services package.

- kvstore: on-device key-value store
- encryption: passphrase-based authenticated encryption
- storage: provider contract, registry and backends
"""
