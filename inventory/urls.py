from rest_framework.routers import DefaultRouter

from inventory.views import ProductViewSet, StockMovementViewSet, StockRecordViewSet

router = DefaultRouter()
router.register(r"products", ProductViewSet, basename="product")
router.register(r"stock/movements", StockMovementViewSet, basename="stock-movement")
router.register(r"stock", StockRecordViewSet, basename="stock")

urlpatterns = router.urls
