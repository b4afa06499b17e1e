"""
Downstream API (CPDS). Accepts the broker's application token as Bearer header
or app_token cookie and never sees upstream provider tokens.
"""
from fastapi import FastAPI

from resource_server.auth import RequireAdmin, RequireToken

app = FastAPI(title="CPDS API", version="1.0.0")


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "resource_server"}


@app.get("/cpds/api/hello")
def hello(claims: dict = RequireToken):
    """Echo the caller identity carried by the application token."""
    return {
        "message": "Hello from CPDS API",
        "sub": claims.get("sub"),
        "name": claims.get("name"),
        "email": claims.get("email"),
        "iss": claims.get("iss"),
        "aud": claims.get("aud"),
        "roles": claims.get("roles", []),
    }


@app.get("/admin")
def admin(claims: dict = RequireAdmin):
    """Requires the admin role."""
    return {"ok": True, "message": "Admin access granted", "sub": claims.get("sub")}


if __name__ == "__main__":
    import os

    import uvicorn
    uvicorn.run(
        "resource_server.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "3001")),
    )
