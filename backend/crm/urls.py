from rest_framework.routers import DefaultRouter
from django.urls import path, include
from .views import CustomerViewSet, OpportunityViewSet

router = DefaultRouter()  # default trailing slash = True
router.register(r'customer', CustomerViewSet, basename="customer")
router.register(r'opportunity', OpportunityViewSet, basename="opportunity")

urlpatterns = [path('', include(router.urls))]
