"""
callgate - serialized, cached and deduplicated access to slow paid APIs.
"""
