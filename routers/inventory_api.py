from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import inventory
from dependencies import get_db
from models import InventoryLine, InventoryLineIn
from .responses import unwrap

router = APIRouter()


@router.post("/inventory", response_model=InventoryLine, status_code=201)
def create_line_api(
    body: InventoryLineIn,
    db: Session = Depends(get_db),
):
    return unwrap(inventory.create_line(db, body))


@router.get("/inventory", response_model=list[InventoryLine])
def list_lines_api(
    city_id: str,
    db: Session = Depends(get_db),
):
    return unwrap(inventory.list_lines(db, city_id))


@router.get("/inventory/{line_id}", response_model=InventoryLine)
def get_line_api(
    line_id: str,
    db: Session = Depends(get_db),
):
    return unwrap(inventory.get_line(db, line_id))
