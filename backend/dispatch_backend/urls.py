from django.contrib import admin
from django.urls import path, include

from orders.urls import admin_urlpatterns, mission_urlpatterns, order_urlpatterns
from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check), # Health check endpoint

    # Authentication endpoints (at /api/auth/)
    path('api/auth/', include('accounts.urls')),  # login, refresh, me

    # Driver APIs (profile, availability, location, offers, missions, schedule)
    path('api/driver/', include('drivers.urls')),

    # Orders, driver mission actions and dispatcher overrides
    path('api/orders/', include(order_urlpatterns)),
    path('api/missions/', include(mission_urlpatterns)),
    path('api/admin/orders/', include(admin_urlpatterns)),
]
