import bay_booking.models
import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Facility',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=150)),
                ('slug', models.SlugField(max_length=80, unique=True)),
                ('timezone', models.CharField(default=bay_booking.models.default_timezone, max_length=64)),
                ('max_concurrent_bookings', models.PositiveIntegerField(blank=True, null=True)),
                ('default_booking_duration', models.PositiveIntegerField(
                    default=60,
                    validators=[django.core.validators.MinValueValidator(1)],
                )),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name_plural': 'facilities',
            },
        ),
        migrations.CreateModel(
            name='Bay',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=80)),
                ('status', models.CharField(
                    choices=[('available', 'Available'), ('booked', 'Booked'), ('in-use', 'In Use'), ('maintenance', 'Maintenance')],
                    default='available',
                    max_length=20,
                )),
                ('facility', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='bays', to='bay_booking.facility',
                )),
            ],
            options={
                'ordering': ['name'],
                'constraints': [
                    models.UniqueConstraint(fields=('facility', 'name'), name='uq_bay_facility_name'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Member',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('full_name', models.CharField(max_length=150)),
                ('email', models.EmailField(blank=True, max_length=254)),
                ('phone', models.CharField(blank=True, max_length=50)),
                ('status', models.CharField(
                    choices=[('active', 'Active'), ('inactive', 'Inactive')], default='active', max_length=10,
                )),
                ('membership_expiry', models.DateField(blank=True, null=True)),
                ('facility', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='members', to='bay_booking.facility',
                )),
            ],
            options={
                'ordering': ['full_name'],
            },
        ),
        migrations.CreateModel(
            name='BusinessHours',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('weekday', models.IntegerField(choices=[
                    (0, 'Monday'), (1, 'Tuesday'), (2, 'Wednesday'), (3, 'Thursday'),
                    (4, 'Friday'), (5, 'Saturday'), (6, 'Sunday'),
                ])),
                ('open', models.TimeField()),
                ('close', models.TimeField()),
                ('is_open', models.BooleanField(default=True)),
                ('facility', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='business_hours', to='bay_booking.facility',
                )),
            ],
            options={
                'verbose_name_plural': 'business hours',
                'constraints': [
                    models.UniqueConstraint(fields=('facility', 'weekday'), name='uq_business_hours_facility_weekday'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Booking',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('start_time', models.DateTimeField(db_index=True)),
                ('end_time', models.DateTimeField()),
                ('status', models.CharField(
                    choices=[
                        ('confirmed', 'Confirmed'), ('checked-in', 'Checked In'), ('no-show', 'No Show'),
                        ('completed', 'Completed'), ('canceled', 'Canceled'),
                    ],
                    default='confirmed',
                    max_length=12,
                )),
                ('payment_method', models.CharField(
                    choices=[('cash', 'Cash'), ('card', 'Card'), ('member_account', 'Member Account')],
                    default='cash',
                    max_length=20,
                )),
                ('payment_status', models.CharField(
                    choices=[('paid', 'Paid'), ('unpaid', 'Unpaid'), ('refunded', 'Refunded')],
                    default='unpaid',
                    max_length=10,
                )),
                ('payment_amount_cents', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('bay', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name='bookings', to='bay_booking.bay',
                )),
                ('facility', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='bookings', to='bay_booking.facility',
                )),
                ('member', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name='bookings', to='bay_booking.member',
                )),
            ],
            options={
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(('start_time__lt', models.F('end_time'))),
                        name='ck_booking_start_before_end',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='AuditLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('action', models.CharField(
                    choices=[('create', 'Create'), ('update', 'Update'), ('delete', 'Delete')], max_length=10,
                )),
                ('actor_id', models.CharField(max_length=80)),
                ('actor_display_name', models.CharField(max_length=150)),
                ('timestamp', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('object_type', models.CharField(max_length=40)),
                ('object_id', models.CharField(max_length=80)),
                ('object_name', models.CharField(blank=True, max_length=255)),
                ('source', models.CharField(blank=True, max_length=80)),
                ('previous_value', models.JSONField(blank=True, null=True)),
                ('new_value', models.JSONField(blank=True, null=True)),
                ('facility', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='audit_logs', to='bay_booking.facility',
                )),
            ],
            options={
                'ordering': ['-timestamp', '-id'],
            },
        ),
    ]
