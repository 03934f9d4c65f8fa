from django.urls import path
from rest_framework.routers import DefaultRouter

from sales.views import CreditSaleViewSet, CustomerViewSet, PaymentViewSet, ReconciliationView

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customer")
router.register(r"credit-sales", CreditSaleViewSet, basename="credit-sale")
router.register(r"payments", PaymentViewSet, basename="payment")

urlpatterns = router.urls + [
    path("reconciliation/", ReconciliationView.as_view(), name="reconciliation"),
]
