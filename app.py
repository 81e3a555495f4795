import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config import configure_logging, get_settings
from errors import (
    AlreadyPlaced,
    DistributionFailed,
    PlacementFailed,
    TreeFull,
    TreeNotInitialized,
    UnknownMember,
    UnknownPayer,
    UnknownReferrer,
)
from services import Services, build_services

configure_logging(get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Cooperative MLM Engine", version="0.1.0")

# CORS middleware to allow the admin frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_services: Optional[Services] = None


def get_services() -> Services:
    """
    lazily wired from settings on first request.
    tests swap this out via app.dependency_overrides.
    """
    global _services
    if _services is None:
        _services = build_services(get_settings())
    return _services


# ---------
# pydantic models (requests)
# ---------

class PlaceMemberRequest(BaseModel):
    new_member_id: str = Field(..., description="ID of the member being placed")
    referrer_id: Optional[str] = Field(
        None, description="Referring member; omit to attach under the root"
    )


class DistributeRequest(BaseModel):
    payment_id: str = Field(..., description="Approved PSF payment ID")
    payer_member_id: str = Field(..., description="Member who made the payment")
    unit_amount: Optional[Decimal] = Field(
        None, description="Credit per ancestor (default: configured PSF unit)"
    )
    total_amount: Optional[Decimal] = Field(
        None, description="Payment total (default: configured PSF amount)"
    )


# ---------
# endpoints: inbound collaborators
# ---------

@app.post("/api/tree/place")
def tree_place(payload: PlaceMemberRequest, services: Services = Depends(get_services)):
    """
    registration flow: place a newly activated member in the tree.
    """
    try:
        node = services.placement.place_member(payload.referrer_id, payload.new_member_id)
    except UnknownReferrer as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (AlreadyPlaced, TreeFull) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        # malformed ids, self-referral
        raise HTTPException(status_code=400, detail=str(e))
    except (PlacementFailed, TreeNotInitialized) as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception:
        logger.exception("Unexpected placement error")
        raise HTTPException(status_code=500, detail="Internal server error")

    return {"status": "placed", "node": node.to_dict()}


@app.post("/api/psf/distribute")
def psf_distribute(payload: DistributeRequest, services: Services = Depends(get_services)):
    """
    payment approval flow: distribute one approved PSF payment.
    returns either 'applied' or 'duplicate' (already processed, nothing written).
    """
    try:
        result = services.distribution.distribute(
            payload.payment_id,
            payload.payer_member_id,
            unit_amount=payload.unit_amount,
            total_amount=payload.total_amount,
        )
    except UnknownPayer as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DistributionFailed as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception:
        logger.exception("Unexpected distribution error")
        raise HTTPException(status_code=500, detail="Internal server error")

    return result.to_dict()


# ---------
# endpoints: read-only reporting
# ---------

@app.get("/api/tree/node")
def tree_node(
    member_id: str = Query(..., description="Member to look up"),
    services: Services = Depends(get_services),
):
    node = services.tree.get_node(member_id)
    if node is None:
        raise HTTPException(status_code=404, detail=f"Member {member_id} is not in the tree.")
    return node.to_dict()


@app.get("/api/tree/nodes")
def tree_nodes(services: Services = Depends(get_services)):
    """
    full tree listing in level order, with children counts.
    """
    return {"nodes": services.reporting.tree_listing()}


@app.get("/api/tree/stats")
def tree_stats(services: Services = Depends(get_services)):
    return services.reporting.tree_stats()


@app.get("/api/tree/network")
def tree_network(
    member_id: str = Query(..., description="Member whose downline we want"),
    max_levels: int = Query(3, ge=1, le=10, description="How many levels deep to fetch"),
    limit_per_level: int = Query(50, ge=1, le=500, description="Max members per level"),
    services: Services = Depends(get_services),
):
    """
    return the member's downline up to max_levels deep.

    response:
    {
      "member_id": "...",
      "max_levels": 3,
      "limit_per_level": 50,
      "levels": [
        {"level": 1, "members": [...]},
        {"level": 2, "members": [...]},
        {"level": 3, "members": [...]}
      ]
    }
    """
    try:
        levels = services.reporting.network_levels(
            member_id, max_levels=max_levels, limit_per_level=limit_per_level
        )
    except UnknownMember as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "member_id": member_id,
        "max_levels": max_levels,
        "limit_per_level": limit_per_level,
        "levels": levels,
    }


@app.get("/api/distributions/payment")
def distributions_for_payment(
    payment_id: str = Query(..., description="PSF payment ID"),
    services: Services = Depends(get_services),
):
    events = services.reporting.payment_events(payment_id)
    return {"payment_id": payment_id, "processed": bool(events), "events": events}


@app.get("/api/distributions/member")
def distributions_for_member(
    member_id: str = Query(..., description="Member (or 'company') to fetch earnings for"),
    include_breakdown: bool = Query(False, description="Include per-event breakdown"),
    breakdown_limit: int = Query(50, ge=1, le=500, description="Max breakdown entries"),
    from_datetime: Optional[datetime] = Query(
        None,
        alias="from",
        description="Start datetime (inclusive, ISO 8601). If omitted, uses beginning of time.",
    ),
    to_datetime: Optional[datetime] = Query(
        None,
        alias="to",
        description="End datetime (exclusive, ISO 8601). If omitted, uses end of time.",
    ),
    services: Services = Depends(get_services),
):
    """
    aggregate MLM earnings for a member, all-time or in [from, to).
    """
    try:
        return services.reporting.member_earnings(
            member_id,
            since=from_datetime,
            until=to_datetime,
            include_breakdown=include_breakdown,
            breakdown_limit=breakdown_limit,
        )
    except UnknownMember as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/api/distributions/history")
def distributions_history(
    limit: int = Query(50, ge=1, le=500, description="Max events to return"),
    services: Services = Depends(get_services),
):
    return {"events": services.reporting.history(limit)}


@app.get("/api/reports/totals")
def reports_totals(services: Services = Depends(get_services)):
    return services.reporting.aggregate_totals().to_dict()
