from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from commission_db import (
    compute_commission,
    compute_live_commissions,
    get_snapshots,
    materialize_snapshots,
)
from config import Settings, get_settings, setup_logging
from db.db import get_conn
from errors import NotFoundError, ValidationError
from partner_db import register_partner
from rank_engine import change_partner_type, check_referrer_status, get_rank_progress
from referral_engine import resolve_chain, resolve_user_id
from store import PostgresReferralStore, ReferralStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(get_settings().log_level)
    yield


app = FastAPI(title="Partner Referral Chain", version="0.1.0", lifespan=lifespan)

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store():
    """
    one connection and one transaction per request.
    committed when the endpoint returns, rolled back when it raises.
    """
    with get_conn() as conn:
        store = PostgresReferralStore(conn)
        try:
            yield store
            conn.commit()
        except Exception:
            conn.rollback()
            raise


# ---------
# pydantic models (requests)
# ---------

class RegisterPartnerRequest(BaseModel):
    user_id: str = Field(..., description="ID of the user becoming a partner")
    referral_code_entered: Optional[str] = Field(
        None, description="Referral code the user signed up with"
    )

class CheckReferrerStatusRequest(BaseModel):
    user_id: str = Field(..., description="User whose direct referrer is checked")

class UpdatePartnerTypeRequest(BaseModel):
    user_id: str
    partner_type: str = Field(..., description="DTT or DLHT")

class SnapshotRefreshRequest(BaseModel):
    recipient_id: str = Field(..., description="Recipient ID or email to regenerate")


# ---------
# endpoints
# ---------

@app.get("/api/referral-chain")
def referral_chain(
    identifier: Optional[str] = Query(None, alias="id", description="User ID or email"),
    store: ReferralStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """
    full upline of a user, ordered from the chain root down to the user.
    """
    try:
        chain = resolve_chain(store, identifier, max_hops=settings.max_chain_hops)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except Exception:
        logger.exception("referral chain lookup failed for {}", identifier)
        raise HTTPException(status_code=500, detail="Internal server error")

    return chain.to_dict()


@app.get("/api/chain-commission-snapshot")
def chain_commission_snapshot(
    identifier: Optional[str] = Query(None, alias="id", description="Recipient ID or email"),
    store: ReferralStore = Depends(get_store),
):
    """
    pre-computed commission rows for every downline partner of the recipient,
    newest first. [] when no snapshot was generated yet.
    """
    try:
        rows = get_snapshots(store, identifier)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except Exception:
        logger.exception("snapshot read failed for {}", identifier)
        raise HTTPException(status_code=500, detail="Failed to fetch commission snapshot data")

    return [r.to_dict() for r in rows]


@app.get("/api/chain-commission")
def chain_commission_live(
    identifier: Optional[str] = Query(None, alias="id", description="Recipient ID or email"),
    source: Optional[str] = Query(None, description="Source partner ID or email"),
    store: ReferralStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """
    same rows as the snapshot endpoint, computed live by walking every chain.
    with `source` set, only the recipient's row for that one partner.
    """
    try:
        recipient_id = resolve_user_id(store, identifier)
        if source is not None:
            row = compute_commission(
                store,
                recipient_id,
                resolve_user_id(store, source),
                settings.commission_policy(),
                max_hops=settings.max_chain_hops,
            )
            return row.to_dict()

        rows = compute_live_commissions(
            store,
            recipient_id,
            settings.commission_policy(),
            max_hops=settings.max_chain_hops,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception:
        logger.exception("live commission computation failed for {}", identifier)
        raise HTTPException(status_code=500, detail="Internal server error")

    return [r.to_dict() for r in rows]


@app.post("/api/chain-commission-snapshot/refresh")
def chain_commission_snapshot_refresh(
    payload: SnapshotRefreshRequest,
    store: ReferralStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """
    regenerate one recipient's snapshot rows and return them.
    """
    try:
        recipient_id = resolve_user_id(store, payload.recipient_id)
        rows = materialize_snapshots(
            store,
            recipient_id,
            settings.commission_policy(),
            max_hops=settings.max_chain_hops,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except Exception:
        logger.exception("snapshot refresh failed for {}", payload.recipient_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    return [r.to_dict() for r in rows]


@app.post("/api/register-partner")
def register_partner_endpoint(
    payload: RegisterPartnerRequest,
    store: ReferralStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """
    create the partner record, their own referral code and their initial rank.
    """
    try:
        return register_partner(
            store,
            payload.user_id,
            payload.referral_code_entered,
            max_code_attempts=settings.referral_code_attempts,
            max_hops=settings.max_chain_hops,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception:
        logger.exception("partner registration failed for {}", payload.user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/check-referrer-status")
def check_referrer_status_endpoint(
    payload: CheckReferrerStatusRequest,
    store: ReferralStore = Depends(get_store),
):
    try:
        return check_referrer_status(store, payload.user_id)
    except Exception:
        logger.exception("referrer status check failed for {}", payload.user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/update-partner-type")
def update_partner_type(
    payload: UpdatePartnerTypeRequest,
    store: ReferralStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    try:
        result = change_partner_type(
            store,
            payload.user_id,
            payload.partner_type,
            cooldown_days=settings.partner_type_cooldown_days,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception:
        logger.exception("partner type update failed for {}", payload.user_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    result["change_date"] = result["change_date"].isoformat()
    return result


@app.get("/api/partner-rank/progress")
def partner_rank_progress(
    rank: str = Query(..., description="Current partner rank"),
    total_lots: float = Query(0, ge=0, description="Lots traded so far"),
):
    return get_rank_progress(rank, total_lots)
