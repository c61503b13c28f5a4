"""FastAPI Dependencies for the Task Market

Provides dependency injection for the marketplace facade, the gateway
client and the calling actor.
"""

from typing import Annotated, TypeVar

from fastapi import Depends, Header, HTTPException

from ..core.entities import Actor, ActorRole
from ..infrastructure.payments import PaymentGatewayClient
from ..services import Marketplace, OperationResult

T = TypeVar("T")

# Global service instances (initialized in lifespan)
_marketplace: Marketplace | None = None
_gateway: PaymentGatewayClient | None = None


def init_services(marketplace: Marketplace, gateway: PaymentGatewayClient) -> None:
    """Initialize global service instances (called from lifespan)"""
    global _marketplace, _gateway
    _marketplace = marketplace
    _gateway = gateway


def get_marketplace() -> Marketplace:
    """Get Marketplace instance"""
    if _marketplace is None:
        raise RuntimeError("Marketplace not initialized")
    return _marketplace


def get_gateway_client() -> PaymentGatewayClient:
    """Get PaymentGatewayClient instance"""
    if _gateway is None:
        raise RuntimeError("PaymentGatewayClient not initialized")
    return _gateway


def get_actor(
    x_actor_id: Annotated[str | None, Header()] = None,
    x_actor_role: Annotated[str | None, Header()] = None,
) -> Actor:
    """
    Build the calling actor from headers set by the authentication proxy

    X-Actor-Id: verified identity
    X-Actor-Role: poster | doer | arbiter
    """
    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=401,
            detail={"code": "UNAUTHENTICATED", "message": "Missing actor headers", "details": {}},
        )
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "VALIDATION_ERROR",
                "message": f"Unknown role: {x_actor_role}",
                "details": {},
            },
        )
    return Actor(actor_id=x_actor_id, role=role)


def unwrap(result: OperationResult[T]) -> T:
    """Return the value of a successful result, or raise the matching HTTP error"""
    if result.ok:
        return result.value
    error = result.error
    raise HTTPException(status_code=error.status_code, detail=error.to_dict())


# Type aliases for cleaner dependency injection
MarketplaceDep = Annotated[Marketplace, Depends(get_marketplace)]
GatewayDep = Annotated[PaymentGatewayClient, Depends(get_gateway_client)]
ActorDep = Annotated[Actor, Depends(get_actor)]
