"""
Lambda entrypoint for the trigger API (container image deployment).
The scheduler calls POST /api/v1/cron/reviews; CRON_MAX_SECONDS should stay
below the function timeout.
"""
from mangum import Mangum
from api.main import app

handler = Mangum(app, lifespan="on")
