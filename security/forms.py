from flask_wtf import FlaskForm
from wtforms import StringField, PasswordField, BooleanField, IntegerField, SelectField, SelectMultipleField
from wtforms.validators import DataRequired, InputRequired, Length, Email, Optional, AnyOf, NumberRange, StopValidation

from .models import TWO_FACTOR_METHODS
from .settings import ENFORCEMENT_LEVELS


def _text(value):
    return str(value).strip() if value is not None else value


def _lower(value):
    return value.lower() if isinstance(value, str) else value


def _string(form, field):
    # JSON numbers and booleans must not reach the hashing layer
    if field.data is not None and not isinstance(field.data, str):
        raise StopValidation("Must be a string.")


METHOD_CHOICES = [(m, m) for m in TWO_FACTOR_METHODS]


class ApiForm(FlaskForm):
    """JSON request body; the API authenticates with bearer tokens, not cookies."""

    class Meta:
        csrf = False


class LoginForm(ApiForm):
    email = StringField("email", filters=[_text, _lower], validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("password", validators=[_string, DataRequired()])


class VerifyTwoFactorForm(ApiForm):
    sessionToken = StringField("sessionToken", filters=[_text], validators=[DataRequired(), Length(max=128)])
    code = StringField("code", filters=[_text], validators=[DataRequired(), Length(max=32)])
    useBackupCode = BooleanField("useBackupCode")
    method = StringField("method", filters=[_text], validators=[Optional(), AnyOf(TWO_FACTOR_METHODS)])


class PendingTokenForm(ApiForm):
    sessionToken = StringField("sessionToken", filters=[_text], validators=[DataRequired(), Length(max=128)])


class SetupTwoFactorForm(ApiForm):
    setupToken = StringField("setupToken", filters=[_text], validators=[DataRequired(), Length(max=128)])
    method = SelectField("method", choices=METHOD_CHOICES)


class VerifySetupForm(SetupTwoFactorForm):
    code = StringField("code", filters=[_text], validators=[DataRequired(), Length(max=32)])


class ForgotPasswordForm(ApiForm):
    email = StringField("email", filters=[_text, _lower], validators=[DataRequired(), Email(), Length(max=255)])


class ResetPasswordForm(ApiForm):
    token = StringField("token", filters=[_text], validators=[DataRequired(), Length(max=128)])
    password = PasswordField("password", validators=[_string, DataRequired(), Length(max=256)])


class FirstUserForm(ApiForm):
    firstName = StringField("firstName", filters=[_text], validators=[DataRequired(), Length(max=50)])
    lastName = StringField("lastName", filters=[_text], validators=[DataRequired(), Length(max=50)])
    email = StringField("email", filters=[_text, _lower], validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("password", validators=[_string, DataRequired(), Length(max=256)])


class CodeForm(ApiForm):
    code = StringField("code", filters=[_text], validators=[DataRequired(), Length(max=32)])


class DisableTwoFactorForm(ApiForm):
    password = PasswordField("password", validators=[_string, DataRequired()])
    method = StringField("method", filters=[_text], validators=[Optional(), AnyOf(TWO_FACTOR_METHODS)])


class ChangePasswordForm(ApiForm):
    currentPassword = PasswordField("currentPassword", validators=[_string, DataRequired()])
    newPassword = PasswordField("newPassword", validators=[_string, DataRequired(), Length(max=256)])


class SecuritySettingsForm(ApiForm):
    maxLoginAttempts = IntegerField("maxLoginAttempts", validators=[InputRequired(), NumberRange(1, 20)])
    lockoutMinutes = IntegerField("lockoutMinutes", validators=[InputRequired(), NumberRange(1, 1440)])
    permanentBlockAttempts = IntegerField("permanentBlockAttempts", validators=[InputRequired(), NumberRange(5, 100)])
    permanentBlockWindowHours = IntegerField("permanentBlockWindowHours", default=24,
                                             validators=[Optional(), NumberRange(1, 720)])
    lockAccounts = BooleanField("lockAccounts")
    twoFactorEnforcement = SelectField("twoFactorEnforcement", choices=[(e, e) for e in ENFORCEMENT_LEVELS])
    twoFactorMethods = SelectMultipleField("twoFactorMethods", choices=METHOD_CHOICES,
                                           validators=[DataRequired()])
    passwordMinLength = IntegerField("passwordMinLength", validators=[InputRequired(), NumberRange(6, 32)])
    passwordRequireUppercase = BooleanField("passwordRequireUppercase")
    passwordRequireLowercase = BooleanField("passwordRequireLowercase")
    passwordRequireNumbers = BooleanField("passwordRequireNumbers")
    passwordRequireSpecial = BooleanField("passwordRequireSpecial")
