from django.core.management.base import BaseCommand

from clinic.models import User

DEMO_PASSWORD = "Dimedio-demo-2024"

DEMO_SET = [
    ("doctor@dimedio.local", "Demo Doctor", "user"),
    ("moderator@dimedio.local", "Demo Moderator", "moderator"),
    ("admin@dimedio.local", "Demo Admin", "admin"),
    ("super@dimedio.local", "Demo Super Admin", "super_admin"),
]


class Command(BaseCommand):
    help = "Ensure verified demo accounts exist with the demo password (idempotent)."

    def add_arguments(self, parser):
        parser.add_argument("--password", default=DEMO_PASSWORD)

    def handle(self, *args, **opts):
        password = opts["password"]
        for email, name, role in DEMO_SET:
            user, created = User.objects.get_or_create(
                username=email,
                defaults={"email": email, "full_name": name, "role": role, "email_verified": True},
            )
            user.email = email
            user.role = role
            user.email_verified = True
            user.is_active = True
            user.set_password(password)
            user.save()
            state = "created" if created else "reset"
            self.stdout.write(self.style.SUCCESS(f"{state}: {email} ({role})"))
        self.stdout.write(self.style.SUCCESS("All demo users ensured."))
