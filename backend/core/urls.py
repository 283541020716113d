from django.urls import path

from .views import healthz, DeepHealthView

urlpatterns = [
    path('healthz/', healthz),
    path('deep-health/', DeepHealthView.as_view()),
]
