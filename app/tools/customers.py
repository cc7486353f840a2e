from typing import Optional

from fastapi import APIRouter, Depends

from app.dependencies.services import get_customer_service
from app.schemas.customer import Customer, CustomerCreate, CustomerListResponse, CustomerUpdate
from app.services import CustomerService
from app.services.exceptions import ServiceError
from app.tools.errors import http_error

router = APIRouter()


@router.get("", response_model=CustomerListResponse)
async def list_customers(
    search: Optional[str] = None,
    service: CustomerService = Depends(get_customer_service),
):
    try:
        customers = await service.list(search)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return CustomerListResponse(total=len(customers), items=customers)


@router.post("", response_model=Customer, status_code=201)
async def create_customer(
    req: CustomerCreate,
    service: CustomerService = Depends(get_customer_service),
):
    try:
        return await service.create(req)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.get("/{customer_id}", response_model=Customer)
async def get_customer(
    customer_id: str,
    service: CustomerService = Depends(get_customer_service),
):
    try:
        return await service.get(customer_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.patch("/{customer_id}", response_model=Customer)
async def update_customer(
    customer_id: str,
    req: CustomerUpdate,
    service: CustomerService = Depends(get_customer_service),
):
    try:
        return await service.update(customer_id, req)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.delete("/{customer_id}", status_code=204)
async def delete_customer(
    customer_id: str,
    service: CustomerService = Depends(get_customer_service),
):
    try:
        await service.delete(customer_id)
    except ServiceError as exc:
        raise http_error(exc) from exc
