"""
Constants for the live data source.

Channel paths, broker subject parts and API routes are defined here in one
place for consistency.
"""

# Live channel path served by the plugin backend
STREAM_PATH = "stream"

# Broker subjects: live.<scope>.<namespace>.<path> for packets,
# live.control.<scope>.<namespace>.<action> for the subscribe handshake
LIVE_SUBJECT_PREFIX = "live"
CONTROL_SUBSCRIBE = "subscribe"
CONTROL_UNSUBSCRIBE = "unsubscribe"

# Backend query API route
QUERY_API_PATH = "/api/ds/query"
