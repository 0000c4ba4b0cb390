"""Vercel serverless handler for the agentmarket API."""

from mangum import Mangum

from agentmarket.api import app

# Mangum adapter for ASGI -> AWS Lambda/Vercel; lifespan seeds the wallets
handler = Mangum(app, lifespan="auto")
