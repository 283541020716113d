from rest_framework.routers import DefaultRouter
from django.urls import path, include
from .views import InvoiceViewSet

router = DefaultRouter(trailing_slash=False)
router.register(r'invoice', InvoiceViewSet, basename='invoice')

urlpatterns = [path('', include(router.urls))]
