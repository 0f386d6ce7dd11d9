from django.urls import path

from . import views

app_name = "medications"

urlpatterns = [
    path("generate/", views.generate, name="generate"),
    path("overdue/", views.overdue, name="overdue"),
]
