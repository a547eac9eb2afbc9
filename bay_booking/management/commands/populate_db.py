from datetime import time

from django.core.management.base import BaseCommand
from bay_booking.models import Bay, BusinessHours, Facility, Member, Weekday


class Command(BaseCommand):
    help = 'Populate database with a sample indoor-golf facility'

    def handle(self, *args, **options):
        facility, created = Facility.objects.get_or_create(
            slug='downtown-golf',
            defaults={
                'name': 'Downtown Indoor Golf',
                'max_concurrent_bookings': 2,
                'default_booking_duration': 60,
            },
        )
        if created:
            self.stdout.write(f'Created facility: {facility.name}')
        else:
            self.stdout.write(f'Facility {facility.slug} already exists')

        # Open every day except Sunday
        for weekday in Weekday:
            BusinessHours.objects.get_or_create(
                facility=facility,
                weekday=weekday,
                defaults={
                    'open': time(9, 0),
                    'close': time(22, 0),
                    'is_open': weekday != Weekday.SUNDAY,
                },
            )

        for name in ['Bay 1', 'Bay 2', 'Bay 3', 'Bay 4']:
            bay, created = Bay.objects.get_or_create(facility=facility, name=name)
            if created:
                self.stdout.write(f'Created bay: {bay.name}')
            else:
                self.stdout.write(f'Bay {bay.name} already exists')

        members_data = [
            {'full_name': 'Alex Morgan', 'email': 'alex@example.com'},
            {'full_name': 'Sam Rivera', 'email': 'sam@example.com'},
            {'full_name': 'Jordan Lee', 'email': 'jordan@example.com'},
        ]
        for member_data in members_data:
            member, created = Member.objects.get_or_create(
                facility=facility,
                email=member_data['email'],
                defaults=member_data,
            )
            if created:
                self.stdout.write(f'Created member: {member.full_name}')

        self.stdout.write(
            self.style.SUCCESS('Successfully populated database with sample data')
        )
