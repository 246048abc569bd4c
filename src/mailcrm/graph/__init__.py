"""Microsoft Graph API client and mail transport.

Usage:
    from mailcrm.auth import GraphAuth
    from mailcrm.graph import GraphClient, GraphMailbox

    client = GraphClient(GraphAuth(client_id, tenant_id, scopes, cache_path))
    mailbox = GraphMailbox(client, timezone="UTC")
"""

from mailcrm.graph.client import GraphClient
from mailcrm.graph.mailbox import GraphMailbox, MailTransport

__all__ = ["GraphClient", "GraphMailbox", "MailTransport"]
