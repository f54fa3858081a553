from django.contrib import admin

from .models import SchoolSettings


@admin.register(SchoolSettings)
class SchoolSettingsAdmin(admin.ModelAdmin):
    fieldsets = (
        ('Branding', {'fields': ('display_name', 'motto', 'address')}),
        ('Grading policy', {'fields': ('promotion_threshold', 'cc_weight', 'bulletin_language')}),
        ('Email', {'fields': ('email_from_address', 'email_from_name')}),
        ('Notifications', {
            'fields': ('default_channels', 'sms_enabled', 'sms_backend', 'sms_api_key',
                       'sms_sender_id', 'chat_enabled', 'chat_backend'),
        }),
        ('Verification', {'fields': ('public_verification_enabled',)}),
    )

    def has_add_permission(self, request):
        # Single row, edited in place
        return not SchoolSettings.objects.exists()

    def has_delete_permission(self, request, obj=None):
        return False
