from rest_framework.routers import DefaultRouter

from inventory.views import MovementViewSet, ProductViewSet

router = DefaultRouter()
router.register(r"products", ProductViewSet, basename="product")
router.register(r"movements", MovementViewSet, basename="movement")

urlpatterns = router.urls
