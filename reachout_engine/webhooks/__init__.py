"""
Inbound provider webhooks: signature checks, vocabulary mapping, routes.
"""
