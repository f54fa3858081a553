from django.contrib import admin

from .models import SchoolClass, Subject, SubjectCategoryRule, SubjectEnrollment


class SubjectInline(admin.TabularInline):
    model = Subject
    extra = 0
    fields = ('name', 'code', 'coefficient', 'category', 'bulletin_section', 'teacher', 'is_active')
    raw_id_fields = ('teacher',)


@admin.register(SchoolClass)
class SchoolClassAdmin(admin.ModelAdmin):
    list_display = ('name', 'level', 'track', 'class_teacher', 'capacity', 'is_active')
    list_filter = ('track', 'is_active')
    search_fields = ('name', 'level')
    inlines = [SubjectInline]


@admin.register(Subject)
class SubjectAdmin(admin.ModelAdmin):
    list_display = ('name', 'code', 'school_class', 'coefficient', 'category', 'bulletin_section', 'teacher')
    list_filter = ('category', 'bulletin_section', 'school_class')
    search_fields = ('name', 'code')


@admin.register(SubjectCategoryRule)
class SubjectCategoryRuleAdmin(admin.ModelAdmin):
    list_display = ('code', 'category', 'bulletin_section')
    list_filter = ('category', 'bulletin_section')
    search_fields = ('code',)


@admin.register(SubjectEnrollment)
class SubjectEnrollmentAdmin(admin.ModelAdmin):
    list_display = ('student', 'subject', 'is_active')
    raw_id_fields = ('student', 'subject')
