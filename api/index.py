"""
METER RAIL - Serverless API

Wraps the FastAPI app for AWS Lambda / Vercel style deployments.
"""

import os
import sys

from mangum import Mangum

# Deploy bundles ship the source tree without installing it
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from meter_rail.api.server import app  # noqa: E402

handler = Mangum(app, lifespan="auto")
