from django.urls import path

from . import views

app_name = "tasks"

urlpatterns = [
    path("board/", views.status_board, name="status_board"),
    path("<int:task_id>/status/", views.task_status, name="task_status"),
    path("<int:task_id>/reconcile/", views.task_reconcile, name="task_reconcile"),
]
