"""
Router de operaciones masivas

Endpoints para encolar lotes de facturas, documentos y comunicaciones,
consultar su estado e historial y cerrar manualmente un lote.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Query
from typing import Optional
from uuid import UUID
from datetime import date
import logging

from jewelry_erp.core.exceptions import BatchNotFound, InvalidStatusTransition, UnsupportedBatchKind
from jewelry_erp.dependencies.services import get_batch_coordinator
from jewelry_erp.modules.batches.coordinator import BatchOperationCoordinator
from jewelry_erp.modules.batches.models import BatchKind, BatchStatus
from jewelry_erp.modules.batches.schemas import (
    BatchCreate, BatchOut, BatchDetail, BatchList, BatchFilters, MarkFailedRequest,
    InvoiceBatchRequest, PdfBatchRequest, CommunicationBatchRequest
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/batch-operations",
    tags=["Batch Operations"],
    responses={404: {"description": "Not found"}}
)


def _submit(coordinator: BatchOperationCoordinator, kind: BatchKind, items, options, created_by):
    try:
        return coordinator.submit(kind, items, options, created_by)
    except UnsupportedBatchKind as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/", response_model=BatchOut, status_code=status.HTTP_202_ACCEPTED)
def create_batch(
    batch_data: BatchCreate,
    coordinator: BatchOperationCoordinator = Depends(get_batch_coordinator)
):
    """
    Encolar una operación masiva

    - **kind**: invoice_generation, pdf_generation o communication_sending
    - **items**: IDs de clientes (facturas) o de facturas (documentos, envíos)
    - **options**: configuración que interpreta el colaborador del lote
    """
    return _submit(coordinator, batch_data.kind, batch_data.items, batch_data.options, batch_data.created_by)


@router.post("/invoices", response_model=BatchOut, status_code=status.HTTP_202_ACCEPTED)
def create_invoice_batch(
    request: InvoiceBatchRequest,
    coordinator: BatchOperationCoordinator = Depends(get_batch_coordinator)
):
    """Generar una factura para cada cliente"""
    options = request.model_dump(mode="json", exclude={"customer_ids", "created_by"}, exclude_none=True)
    return _submit(coordinator, BatchKind.INVOICE_GENERATION, request.customer_ids, options, request.created_by)


@router.post("/pdfs", response_model=BatchOut, status_code=status.HTTP_202_ACCEPTED)
def create_pdf_batch(
    request: PdfBatchRequest,
    coordinator: BatchOperationCoordinator = Depends(get_batch_coordinator)
):
    options = request.model_dump(mode="json", exclude={"invoice_ids", "created_by"}, exclude_none=True)
    return _submit(coordinator, BatchKind.PDF_GENERATION, request.invoice_ids, options, request.created_by)


@router.post("/communications", response_model=BatchOut, status_code=status.HTTP_202_ACCEPTED)
def create_communication_batch(
    request: CommunicationBatchRequest,
    coordinator: BatchOperationCoordinator = Depends(get_batch_coordinator)
):
    """Enviar cada factura a su cliente por email, SMS o WhatsApp"""
    options = request.model_dump(mode="json", exclude={"invoice_ids", "created_by"}, exclude_none=True)
    return _submit(coordinator, BatchKind.COMMUNICATION_SENDING, request.invoice_ids, options, request.created_by)


@router.get("/", response_model=BatchList)
def list_batches(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    kind: Optional[BatchKind] = Query(None, description="Tipo de lote"),
    status: Optional[BatchStatus] = Query(None, description="Estado del lote"),
    date_from: Optional[date] = Query(None, description="Creados desde (YYYY-MM-DD)"),
    date_to: Optional[date] = Query(None, description="Creados hasta (YYYY-MM-DD)"),
    coordinator: BatchOperationCoordinator = Depends(get_batch_coordinator)
):
    """Historial de operaciones masivas"""
    filters = BatchFilters(kind=kind, status=status, date_from=date_from, date_to=date_to)
    batches, total = coordinator.list_batches(filters, limit, offset)
    return {"batches": batches, "total": total, "limit": limit, "offset": offset}


@router.get("/{batch_id}", response_model=BatchDetail)
def get_batch(
    batch_id: UUID,
    coordinator: BatchOperationCoordinator = Depends(get_batch_coordinator)
):
    """Estado, progreso y resultado por ítem de un lote"""
    try:
        return coordinator.get_status(batch_id)
    except BatchNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/{batch_id}/fail", response_model=BatchOut)
def mark_batch_failed(
    batch_id: UUID,
    request: MarkFailedRequest,
    coordinator: BatchOperationCoordinator = Depends(get_batch_coordinator)
):
    """
    Marcar un lote como fallido

    El trabajo que esté en curso no se interrumpe; sus resultados ya no
    cambian el estado del lote.
    """
    try:
        batch = coordinator.mark_failed(batch_id, request.reason)
    except BatchNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.info(f"Batch {batch_id} marked as failed by operator")
    return batch
