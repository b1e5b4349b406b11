from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("settlements", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="payout",
            name="requires_review",
            field=models.BooleanField(db_index=True, default=False),
        ),
    ]
