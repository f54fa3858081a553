from django.contrib import admin

from .models import OutboundMessage


@admin.register(OutboundMessage)
class OutboundMessageAdmin(admin.ModelAdmin):
    list_display = ('recipient', 'channel', 'status', 'provider', 'attempts', 'created_at', 'sent_at')
    list_filter = ('channel', 'status', 'provider')
    search_fields = ('recipient', 'recipient_name', 'subject')
    raw_id_fields = ('student', 'bulletin', 'created_by')
    readonly_fields = ('provider_response', 'error_message', 'attempts', 'sent_at', 'created_at')
