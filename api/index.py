import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from taskledger.api import create_app

# Serverless workers are short-lived; daily assignment runs from a long-lived process.
app = create_app(scheduler_enabled=False, root_path="/api")

handler = Mangum(app)
