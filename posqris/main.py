import logging

from fastapi import FastAPI, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from posqris import config
from posqris.database import Base, engine, SessionLocal
from posqris.exceptions import UnparseablePayload
from posqris.finalizer import DatabaseOrderFinalizer
from posqris.gateways import get_gateway
from posqris.routes import router
from posqris.webhooks import receive

logging.basicConfig(
    level=config.log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="POS QRIS Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/webhooks/{provider}")
async def gateway_webhook(provider: str, request: Request):
    payload = await request.body()

    try:
        gateway = get_gateway(provider)
    except ValueError:
        raise HTTPException(status_code=404, detail="Unknown payment provider")

    db = SessionLocal()
    try:
        ack = await run_in_threadpool(
            receive,
            db,
            gateway,
            payload,
            request.headers,
            DatabaseOrderFinalizer(SessionLocal),
        )
    except UnparseablePayload as e:
        logger.warning("Rejected %s webhook: %s", provider, e.message)
        raise HTTPException(status_code=400, detail=e.message)
    finally:
        db.close()

    return {"ok": True, "result": ack.result}
