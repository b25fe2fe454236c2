"""Gateway: single entry point for all client HTTP traffic.

Authenticates, routes, forwards and uniformly fails every request before it
reaches a service. Services never see an unauthenticated request on an
auth-required route, and clients never see a raw downstream error body.
"""
