"""Small shared helpers: typed errors, ids, clocks, digests and JSON coercion.

Nothing here knows about chats or HTTP routes.
"""
