"""HTML pages shown in the browser at the end of the OAuth redirect."""

from html import escape

from fastapi.responses import HTMLResponse

_BASE_STYLE = """
    body {
      font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
      display: flex;
      justify-content: center;
      align-items: center;
      min-height: 100vh;
      margin: 0;
      background: #f4f4f7;
    }
    .container {
      background: white;
      padding: 40px;
      border-radius: 16px;
      box-shadow: 0 10px 40px rgba(0,0,0,0.15);
      text-align: center;
      max-width: 420px;
    }
    p { color: #555; line-height: 1.6; }
"""


def success_page(state: str) -> HTMLResponse:
    """Page telling the user to return to their terminal."""
    return HTMLResponse(
        content=f"""<!DOCTYPE html>
<html lang="en">
<head>
  <title>Authorization Successful</title>
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <style>{_BASE_STYLE}
    h1 {{ color: #16a34a; }}
    .state {{ font-family: monospace; background: #f3f4f6; padding: 6px 10px;
              border-radius: 6px; font-size: 13px; word-break: break-all; }}
  </style>
</head>
<body>
  <div class="container">
    <h1>Authorization Successful</h1>
    <p>You have successfully authorized the application.</p>
    <p>You can close this window and return to your terminal.</p>
    <p style="font-size: 12px;">State: <span class="state">{escape(state)}</span></p>
  </div>
</body>
</html>
""",
        status_code=200,
    )


def error_page(message: str, status_code: int = 400) -> HTMLResponse:
    """Page reporting a failed authorization.

    Only pass messages that are safe to show to the user; internal details
    belong in the server log.
    """
    return HTMLResponse(
        content=f"""<!DOCTYPE html>
<html lang="en">
<head>
  <title>Authorization Failed</title>
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <style>{_BASE_STYLE}
    h1 {{ color: #dc2626; }}
    .error-message {{ background: #fef2f2; color: #b91c1c; padding: 12px;
                      border-radius: 8px; margin-top: 16px; }}
  </style>
</head>
<body>
  <div class="container">
    <h1>Authorization Failed</h1>
    <p>There was a problem completing the authorization.</p>
    <div class="error-message">{escape(message)}</div>
    <p>Please close this window and try again.</p>
  </div>
</body>
</html>
""",
        status_code=status_code,
    )
