"""
RELIABILITY BILLING - Serverless entry point

Wraps the FastAPI app for AWS Lambda / Vercel style runtimes.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from mangum import Mangum

from reliability_billing.api.server import app

# Serverless handler
handler = Mangum(app, lifespan="auto")
