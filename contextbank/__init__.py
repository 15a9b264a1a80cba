"""
ContextBank - isolated research profiles and lockable knowledge contexts.

Components:
- ContextStore: namespace-scoped reference items and messages
- ProfileLifecycleManager: profile CRUD and the switch protocol
- BoundedContextManager: lock/unlock/teach/update/schedule state machine
- ContextNetworkAggregator: network view with global metrics
- DocumentChunker: byte-bounded chunking for the knowledge document store
"""

__version__ = "0.1.0"
