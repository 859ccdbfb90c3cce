"""Runtime-only real-time plumbing: live connections, rooms and the wire protocol.

Nothing here touches the database. Session semantics live in
``crowdguess.services.sessions``; these modules only know about socket ids
and session ids.
"""
