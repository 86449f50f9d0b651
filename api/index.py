"""
Vercel Python entrypoint.

`vercel.json` rewrites every path to this file, so /api/gumroad and /debug/config
are both served by the FastAPI app in main.py.
"""

from mangum import Mangum

from main import app  # FastAPI instance

# Lambda-style handler for runtimes that expect one instead of an ASGI app.
handler = Mangum(app, lifespan="off")
