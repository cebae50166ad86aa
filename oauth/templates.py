"""HTML templates for the OAuth consent flow.

Claude theme colors:
- Background: #FAF9F7 (warm cream)
- Primary: #D97756 (terracotta)
- Primary hover: #C4684A
- Text: #1A1915 (dark charcoal)
- Secondary text: #6B6860
- Border: #E5E4E0, #D9D8D4
"""

import html

from oauth.stores import ClientRegistration

# ============== OAuth Flow Templates ==============

CONSENT_PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Authorize - {server_name}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{ font-family: 'Söhne', -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
               background: #FAF9F7;
               min-height: 100vh; display: flex; align-items: center; justify-content: center; margin: 0; }}
        .container {{ background: white; padding: 40px; border-radius: 16px; box-shadow: 0 4px 24px rgba(0,0,0,0.08);
                     width: 100%; max-width: 450px; border: 1px solid #E5E4E0; }}
        h1 {{ margin: 0 0 8px; color: #1A1915; font-size: 24px; font-weight: 600; }}
        p {{ color: #6B6860; margin: 0 0 16px; }}
        .app-info {{ display: flex; align-items: center; gap: 15px; padding: 20px; background: #F5F5F0;
                    border-radius: 8px; margin: 20px 0; }}
        .app-icon {{ width: 50px; height: 50px; background: #D97756; border-radius: 10px;
                    display: flex; align-items: center; justify-content: center; color: white; font-size: 24px; font-weight: 600; }}
        .app-name {{ font-weight: 600; color: #1A1915; }}
        .details {{ margin: 20px 0; font-size: 14px; }}
        .detail {{ padding: 10px 12px; background: #F5F5F0; border-radius: 8px; margin-bottom: 8px; word-break: break-all; }}
        .detail-label {{ color: #6B6860; font-weight: 500; margin-right: 6px; }}
        .scope-icon {{ color: #D97756; font-weight: bold; }}
        .buttons {{ display: flex; gap: 12px; }}
        button {{ flex: 1; padding: 14px; border-radius: 8px; font-size: 15px; font-weight: 600; cursor: pointer; transition: all 0.2s; }}
        .allow {{ background: #D97756; color: white; border: none; }}
        .deny {{ background: white; color: #6B6860; border: 1px solid #D9D8D4; }}
        .allow:hover {{ background: #C4684A; }}
        .deny:hover {{ background: #F5F5F0; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Authorize Access</h1>
        <p>{server_description}</p>
        <div class="app-info">
            <div class="app-icon">{client_initial}</div>
            <div>
                <div class="app-name">{client_name}</div>
                <div style="color: #6B6860; font-size: 14px;">wants to access your Microsoft 365 account</div>
            </div>
        </div>
        <div class="details">
            <div class="detail"><span class="detail-label">Client ID</span>{client_id}</div>
            {client_uri}
            <div class="detail"><span class="detail-label">Redirect URIs</span>{redirect_uris}</div>
            {scope}
        </div>
        <p>After approving, you will sign in with Microsoft. This client will be remembered in this browser.</p>
        <form method="POST" action="/authorize">
            <input type="hidden" name="state" value="{state}">
            <div class="buttons">
                <button type="submit" name="action" value="deny" class="deny">Deny</button>
                <button type="submit" name="action" value="approve" class="allow">Approve</button>
            </div>
        </form>
    </div>
</body>
</html>
"""


def _detail(label: str, value: str) -> str:
    return f'<div class="detail"><span class="detail-label">{label}</span>{html.escape(value)}</div>'


def render_consent_page(
    client: ClientRegistration,
    state: str,
    scope: str = "",
    server_name: str = "Microsoft 365 MCP",
    server_description: str = "An MCP client is requesting access to your Microsoft 365 data.",
) -> str:
    """Render the approval dialog. Every client-supplied value is escaped."""
    name = client.client_name or "MCP Client"
    return CONSENT_PAGE.format(
        server_name=html.escape(server_name),
        server_description=html.escape(server_description),
        client_initial=html.escape(name[:1].upper() or "M"),
        client_name=html.escape(name),
        client_id=html.escape(client.client_id),
        client_uri=_detail("Website", client.client_uri) if client.client_uri else "",
        redirect_uris=html.escape(", ".join(client.redirect_uris)),
        scope=_detail("Scope", scope) if scope else "",
        state=html.escape(state, quote=True),
    )
