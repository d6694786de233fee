# Generated manually

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Site',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=255)),
                ('base_url', models.URLField(max_length=500)),
                ('adapter_key', models.CharField(max_length=50)),
                ('login_username', models.TextField(blank=True, null=True)),
                ('login_password', models.TextField(blank=True, null=True)),
                ('api_key_id', models.TextField(blank=True, null=True)),
                ('api_private_key', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='sites',
                    to=settings.AUTH_USER_MODEL
                )),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Section',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('external_id', models.CharField(max_length=255)),
                ('name', models.CharField(max_length=255)),
                ('url_or_slug', models.CharField(blank=True, max_length=500)),
                ('enabled', models.BooleanField(default=True)),
                ('site', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='sections',
                    to='tracker.site'
                )),
            ],
            options={
                'ordering': ['name'],
                'unique_together': {('site', 'external_id')},
            },
        ),
        migrations.CreateModel(
            name='Event',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('external_id', models.CharField(max_length=255)),
                ('title', models.CharField(max_length=500)),
                ('description', models.TextField(blank=True, null=True)),
                ('status', models.CharField(blank=True, max_length=50, null=True)),
                ('created_at', models.DateTimeField(blank=True, null=True)),
                ('end_date', models.DateTimeField(blank=True, null=True)),
                ('volume', models.FloatField(blank=True, null=True)),
                ('liquidity', models.FloatField(blank=True, null=True)),
                ('outcomes', models.JSONField(blank=True, null=True)),
                ('raw', models.JSONField(blank=True, help_text='Raw API response for this event', null=True)),
                ('fetched_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('section', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='events',
                    to='tracker.section'
                )),
                ('site', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='events',
                    to='tracker.site'
                )),
            ],
            options={
                'ordering': ['created_at'],
                'unique_together': {('site', 'section', 'external_id')},
            },
        ),
        migrations.CreateModel(
            name='Market',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('external_id', models.CharField(max_length=255)),
                ('title', models.CharField(max_length=500)),
                ('status', models.CharField(blank=True, max_length=50, null=True)),
                ('close_time', models.DateTimeField(blank=True, null=True)),
                ('trading_close_time', models.DateTimeField(blank=True, null=True)),
                ('volume', models.FloatField(blank=True, null=True)),
                ('liquidity', models.FloatField(blank=True, null=True)),
                ('outcomes', models.JSONField(blank=True, null=True)),
                ('raw', models.JSONField(blank=True, null=True)),
                ('fetched_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('event', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='markets',
                    to='tracker.event'
                )),
                ('section', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='markets',
                    to='tracker.section'
                )),
                ('site', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='markets',
                    to='tracker.site'
                )),
            ],
            options={
                'unique_together': {('site', 'event', 'external_id')},
            },
        ),
        migrations.CreateModel(
            name='UserFollowedEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('attention_level', models.PositiveIntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('event', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='followed_by',
                    to='tracker.event'
                )),
                ('user', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='followed_events',
                    to=settings.AUTH_USER_MODEL
                )),
            ],
            options={
                'unique_together': {('user', 'event')},
            },
        ),
        migrations.CreateModel(
            name='UserFollowedMarket',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('attention_level', models.PositiveIntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('market', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='followed_by',
                    to='tracker.market'
                )),
                ('user', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='followed_markets',
                    to=settings.AUTH_USER_MODEL
                )),
            ],
            options={
                'unique_together': {('user', 'market')},
            },
        ),
        migrations.CreateModel(
            name='MarketNoEvaluation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('no_probability', models.FloatField()),
                ('threshold', models.FloatField(default=0.1)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('market', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='no_evaluations',
                    to='tracker.market'
                )),
                ('user', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='no_evaluations',
                    to=settings.AUTH_USER_MODEL
                )),
            ],
            options={
                'unique_together': {('user', 'market')},
            },
        ),
    ]
