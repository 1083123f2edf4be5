from django.urls import path

from .views import (
    ConnectedAccountDetailView,
    ConnectedAccountListView,
    OAuthCallbackView,
    OAuthRefreshView,
    OAuthStartView,
    OAuthStatusView,
)

app_name = "accounts"


urlpatterns = [
    path('', ConnectedAccountListView.as_view(), name='account-list'),
    path('<int:pk>/', ConnectedAccountDetailView.as_view(), name='account-detail'),
    path('oauth/<str:provider>/start/', OAuthStartView.as_view(), name='oauth-start'),
    path('oauth/<str:provider>/callback/', OAuthCallbackView.as_view(), name='oauth-callback'),
    path('oauth/<str:provider>/refresh/', OAuthRefreshView.as_view(), name='oauth-refresh'),
    path('oauth/<str:provider>/status/', OAuthStatusView.as_view(), name='oauth-status'),
]
