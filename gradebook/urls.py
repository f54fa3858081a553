from django.urls import path
from . import views

app_name = 'gradebook'

urlpatterns = [
    # Ledger
    path('grades/', views.grade_entry, name='grade_entry'),

    # Bulletins
    path('bulletins/', views.bulletin_create, name='bulletin_create'),
    path('bulletins/data/', views.bulletin_data, name='bulletin_data'),
    path('bulletins/bulk/', views.bulk_action, name='bulk_action'),
    path('bulletins/batches/<uuid:pk>/', views.batch_status, name='batch_status'),
    path('bulletins/verify/', views.bulletin_verify, name='bulletin_verify'),
    path('bulletins/<uuid:pk>/<slug:action>/', views.bulletin_action, name='bulletin_action'),
]
