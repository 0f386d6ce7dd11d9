from django.contrib import admin

from .models import CompletionRecord, Task


class CompletionRecordInline(admin.TabularInline):
    model = CompletionRecord
    extra = 0
    fields = ["record_date", "record_time", "notes"]


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = [
        "subject_id", "kind", "frequency_unit", "frequency_value",
        "last_completed_at", "next_due_at", "is_recurring",
    ]
    list_filter = ["kind", "frequency_unit", "is_recurring"]
    search_fields = ["subject_id", "notes"]
    readonly_fields = ["last_completed_at", "created_at", "updated_at"]
    inlines = [CompletionRecordInline]


@admin.register(CompletionRecord)
class CompletionRecordAdmin(admin.ModelAdmin):
    list_display = ["task", "record_date", "record_time", "recorded_at"]
    list_filter = ["record_date"]
    date_hierarchy = "record_date"
