import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from .app.routes.checkout import router as checkout_router  # noqa: E402
from .app.services.checkout import get_integration_config  # noqa: E402

_config = get_integration_config()

logging.basicConfig(
    level=getattr(logging, _config.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Self-serve Checkout API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_config.app_base_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkout_router)


@app.get("/healthz")
def healthz():
    return {"ok": True}
