"""JSON-RPC access over multiple endpoints.

- One :py:class:`eth_smart_provider.provider.smart_provider.SmartProvider`
  fans calls out to several RPC endpoints of the same chain

- Answers are reconciled with :py:mod:`eth_smart_provider.provider.consensus`

- Configure with :py:func:`eth_smart_provider.provider.multi_provider.create_smart_provider`
"""
