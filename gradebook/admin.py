from django.contrib import admin

from .models import GradeComponent, Bulletin, BulkOperation, BulletinDistributionLog, BulletinVerificationLog


@admin.register(GradeComponent)
class GradeComponentAdmin(admin.ModelAdmin):
    list_display = ('student', 'subject', 'school_class', 'academic_year', 'term',
                    'continuous_score', 'exam_score', 'coefficient', 'revision', 'updated_at')
    list_filter = ('academic_year', 'term', 'school_class')
    search_fields = ('student__first_name', 'student__last_name', 'student__admission_number', 'subject__name')
    # Grades are written through the ledger only, so bulletins get marked
    # stale and the revision counter stays true
    readonly_fields = ('student', 'subject', 'school_class', 'academic_year', 'term',
                       'continuous_score', 'exam_score', 'coefficient', 'comment',
                       'entered_by', 'revision', 'created_at', 'updated_at')

    def has_add_permission(self, request):
        return False


@admin.register(Bulletin)
class BulletinAdmin(admin.ModelAdmin):
    list_display = ('student', 'school_class', 'academic_year', 'term', 'version',
                    'status', 'term_average', 'class_rank', 'is_stale', 'signed_at')
    list_filter = ('status', 'academic_year', 'term', 'is_stale', 'school_class')
    search_fields = ('student__first_name', 'student__last_name', 'student__admission_number', 'short_code')
    raw_id_fields = ('student', 'school_class', 'supersedes', 'created_by', 'submitted_by',
                     'approved_by', 'decision_overridden_by')
    # Status changes go through the lifecycle services, never the admin form
    readonly_fields = ('status', 'version', 'subjects', 'term_average', 'class_rank',
                       'total_students_in_class', 'source_fingerprint', 'signed_at',
                       'submitted_at', 'approved_at', 'sent_at', 'short_code',
                       'verification_count', 'last_verified_at', 'created_at', 'updated_at')

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.is_frozen:
            return False
        return super().has_delete_permission(request, obj)


class BulletinDistributionLogInline(admin.TabularInline):
    model = BulletinDistributionLog
    extra = 0
    readonly_fields = ('bulletin', 'channels', 'status', 'error', 'created_at')
    can_delete = False


@admin.register(BulkOperation)
class BulkOperationAdmin(admin.ModelAdmin):
    list_display = ('id', 'action', 'state', 'total', 'succeeded', 'failed', 'skipped',
                    'requested_by', 'started_at', 'finished_at')
    list_filter = ('action', 'state')
    readonly_fields = ('details', 'started_at', 'finished_at')
    inlines = [BulletinDistributionLogInline]


@admin.register(BulletinVerificationLog)
class BulletinVerificationLogAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'code_prefix', 'method', 'result', 'ip_address', 'bulletin')
    list_filter = ('result', 'method')
    search_fields = ('code_prefix', 'ip_address')
    readonly_fields = ('bulletin', 'code_prefix', 'method', 'result', 'ip_address', 'user_agent', 'created_at')

    def has_add_permission(self, request):
        return False
