from fastapi import APIRouter

from app.api.chat import router as chat_router
from app.api.direct import router as direct_router
from app.api.polling import router as polling_router
from app.api.users import router as users_router

router = APIRouter()

router.include_router(chat_router)
router.include_router(polling_router)
router.include_router(direct_router)
router.include_router(users_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Conecta API"}
