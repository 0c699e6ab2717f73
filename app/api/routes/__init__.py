"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.routes.bookings import router as bookings_router
from app.api.routes.cancellations import router as cancellations_router
from app.api.routes.payment_accounts import router as payment_accounts_router
from app.api.routes.trips import router as trips_router
from app.api.routes.verification_codes import router as verification_codes_router

router = APIRouter()

router.include_router(bookings_router, prefix="/bookings")
router.include_router(verification_codes_router, prefix="/bookings")
router.include_router(trips_router, prefix="/trips")
router.include_router(cancellations_router, prefix="/cancellations")
router.include_router(payment_accounts_router, prefix="/payment-accounts")
router.include_router(admin_router, prefix="/admin")
