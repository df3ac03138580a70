from django.urls import path
from .views import (
    DriverProfileView,
    DriverStatusView,
    DriverLocationUpdateView,
    DriverCurrentOfferView,
    DriverCurrentMissionsView,
    DriverMissionHistoryView,
    DriverScheduleView,
)

urlpatterns = [
    path("profile/", DriverProfileView.as_view(), name="driver-profile"),
    path("status/", DriverStatusView.as_view(), name="driver-status"),
    path("location/", DriverLocationUpdateView.as_view(), name="driver-location"),
    path("offer/", DriverCurrentOfferView.as_view(), name="driver-current-offer"),
    path("missions/", DriverCurrentMissionsView.as_view(), name="driver-current-missions"),
    path("history/", DriverMissionHistoryView.as_view(), name="driver-history"),
    path("schedule/", DriverScheduleView.as_view(), name="driver-schedule"),
]
