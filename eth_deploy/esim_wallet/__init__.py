"""eSIM wallet platform.

Deployment plan, post-deployment wiring, device wallet address prediction
and device wallet implementation upgrades for the account abstraction
contracts of the eSIM wallet platform:

- ``Registry``, ``LazyWalletRegistry``

- ``DeviceWalletFactory`` creating ``DeviceWallet`` beacon proxies with ``CREATE2``

- ``ESIMWalletFactory`` creating ``ESIMWallet`` instances

- ``P256Verifier`` for passkey signatures, and the shared ERC-4337 ``EntryPoint``
"""
