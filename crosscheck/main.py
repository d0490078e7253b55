import logging

from fastapi import FastAPI

from crosscheck.routes import api, artifacts

logging.getLogger("crosscheck").addHandler(logging.NullHandler())

app = FastAPI(title="CrossCheck Visual Test Orchestrator")
app.include_router(api.router)
app.include_router(artifacts.router)
