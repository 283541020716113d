from rest_framework.routers import DefaultRouter
from django.urls import path, include
from .views import CouponViewSet, PlanViewSet, PriceViewSet, SubscriptionViewSet

router = DefaultRouter(trailing_slash=False)
router.register(r'plan', PlanViewSet, basename='plan')
router.register(r'price', PriceViewSet, basename='price')
router.register(r'coupon', CouponViewSet, basename='coupon')
router.register(r'subscription', SubscriptionViewSet, basename='subscription')

urlpatterns = [path('', include(router.urls))]
