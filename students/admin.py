from django.contrib import admin

from .models import Student, Enrollment


class EnrollmentInline(admin.TabularInline):
    model = Enrollment
    extra = 0
    fields = ('academic_year', 'class_assigned', 'status', 'remarks')


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ('admission_number', 'full_name', 'current_class', 'guardian_phone', 'status')
    list_filter = ('status', 'current_class', 'gender')
    search_fields = ('admission_number', 'first_name', 'last_name', 'guardian_name', 'guardian_phone')
    inlines = [EnrollmentInline]
