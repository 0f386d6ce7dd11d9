from django.contrib import admin

from .models import Prescription, ScheduledInstance


@admin.register(Prescription)
class PrescriptionAdmin(admin.ModelAdmin):
    list_display = [
        "medication_name", "subject_id", "frequency_type", "start_date",
        "end_date", "status",
    ]
    list_filter = ["status", "frequency_type"]
    search_fields = ["medication_name", "subject_id"]


@admin.register(ScheduledInstance)
class ScheduledInstanceAdmin(admin.ModelAdmin):
    list_display = [
        "prescription", "scheduled_date", "scheduled_time", "preparation_status",
        "verification_status", "dispensing_status",
    ]
    list_filter = ["dispensing_status", "scheduled_date"]
    date_hierarchy = "scheduled_date"
    actions = ["mark_dispensed", "reset_stages"]

    @admin.action(description="Mark selected instances as dispensed")
    def mark_dispensed(self, request, queryset):
        updated = queryset.update(
            dispensing_status=ScheduledInstance.StageStatus.COMPLETED,
        )
        self.message_user(request, f"{updated} instance(s) marked dispensed.")

    @admin.action(description="Reset selected instances to pending")
    def reset_stages(self, request, queryset):
        pending = ScheduledInstance.StageStatus.PENDING
        updated = queryset.update(
            preparation_status=pending,
            verification_status=pending,
            dispensing_status=pending,
        )
        self.message_user(request, f"{updated} instance(s) reset.")
