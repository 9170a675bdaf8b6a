from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from earnings.api import app

app.root_path = "/api"

# Serverless invocations are short-lived; the hourly accrual sweep runs from
# an external cron hitting POST /api/admin/accrual/run instead of the lifespan task.
handler = Mangum(app, lifespan="off")
