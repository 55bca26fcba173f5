from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("users", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="user",
            name="role",
            field=models.CharField(
                choices=[
                    ("admin", "管理员"),
                    ("manager", "店长"),
                    ("therapist", "推拿师"),
                    ("receptionist", "前台"),
                ],
                default="receptionist",
                max_length=20,
            ),
        ),
    ]
