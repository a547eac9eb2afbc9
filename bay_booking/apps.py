from django.apps import AppConfig


class BayBookingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'bay_booking'
    verbose_name = 'Bay booking'
