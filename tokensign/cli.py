import logging
import os
import sys
from contextlib import contextmanager

import click

from . import __version__
from .api import SigningService
from .config import (
    CLIConfig,
    LogConfig,
    StdLogOutput,
    parse_cli_config,
    parse_logging_config,
)
from .config_utils import ConfigurationError
from .pdf_utils import misc
from .sign.errors import (
    InitializationFailed,
    LibraryNotFound,
    LoginFailed,
    TokenSignError,
    describe,
)
from .sign.pkcs11 import PinBuffer

__all__ = ['cli']

logger = logging.getLogger(__name__)

PIN_ENV_VAR = "TOKENSIGN_PIN"
DEFAULT_CONFIG_FILE = 'tokensign.yml'


class NoStackTraceFormatter(logging.Formatter):
    def formatException(self, ei) -> str:
        return ""


LOG_FORMAT_STRING = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def logging_setup(log_configs, verbose: bool):
    log_config: LogConfig
    for module, log_config in log_configs.items():
        cur_logger = logging.getLogger(module)
        cur_logger.setLevel(log_config.level)
        if isinstance(log_config.output, StdLogOutput):
            if log_config.output == StdLogOutput.STDOUT:
                handler = logging.StreamHandler(sys.stdout)
            else:
                handler = logging.StreamHandler()
            # when logging to the console, don't output stack traces
            # unless in verbose mode
            if verbose:
                formatter = logging.Formatter(LOG_FORMAT_STRING)
            else:
                formatter = NoStackTraceFormatter(LOG_FORMAT_STRING)
        else:
            handler = logging.FileHandler(log_config.output)
            formatter = logging.Formatter(LOG_FORMAT_STRING)
        handler.setFormatter(formatter)
        cur_logger.addHandler(handler)


@contextmanager
def tokensign_exception_manager():
    msg = exception = None
    try:
        yield
    except click.ClickException:
        raise
    except misc.PdfReadError as e:
        exception = e
        msg = f"Failed to read PDF file: {e.msg}"
    except LoginFailed as e:
        exception = e
        msg = f"Login failed: {e.msg}"
        if not e.retryable:
            msg += " The token needs attention before it can be used."
    except TokenSignError as e:
        exception = e
        msg = f"{e.msg} [{e.code.name}]"
    except ConfigurationError as e:
        exception = e
        msg = f"Configuration problem: {e}"
    except Exception as e:
        exception = e
        msg = "Generic processing error."

    if exception is not None:
        logger.error(msg, exc_info=exception)
        raise click.ClickException(msg)


def _read_pin() -> PinBuffer:
    pin_env = os.environ.get(PIN_ENV_VAR, None)
    if pin_env is not None:
        return PinBuffer(pin_env)
    return PinBuffer(
        click.prompt('Token PIN', hide_input=True, show_default=False)
    )


def _parse_rect(value):
    if value is None:
        return None
    try:
        coords = tuple(float(x) for x in value.split(','))
    except ValueError:
        coords = ()
    if len(coords) != 4:
        raise click.BadParameter(
            "Rectangle must be given as x1,y1,x2,y2.", param_hint='--rect'
        )
    return coords


@click.group()
@click.version_option(prog_name='tokensign', version=__version__)
@click.option('--config',
              help=(
                  'YAML file to load configuration from '
                  f'[default: {DEFAULT_CONFIG_FILE}]'
              ), required=False, type=click.File('r'))
@click.option('--verbose', help='Run in verbose mode', required=False,
              default=False, type=bool, is_flag=True)
@click.pass_context
def cli(ctx, config, verbose):
    config_text = None
    if config is None:
        try:
            with open(DEFAULT_CONFIG_FILE, 'r') as f:
                config_text = f.read()
            config = DEFAULT_CONFIG_FILE
        except FileNotFoundError:
            pass
        except IOError as e:
            raise click.ClickException(
                f"Failed to read {DEFAULT_CONFIG_FILE}: {str(e)}"
            )
    else:
        try:
            config_text = config.read()
        except IOError as e:
            raise click.ClickException(
                f"Failed to read configuration: {str(e)}",
            )

    ctx.ensure_object(dict)
    if config_text is not None:
        try:
            cfg = parse_cli_config(config_text)
        except ConfigurationError as e:
            raise click.ClickException(f"Configuration problem: {e}")
        log_config = cfg.log_config
    else:
        cfg = CLIConfig()
        log_config = parse_logging_config({})
    ctx.obj['config'] = cfg

    if verbose:
        # override the root logger's logging level, but preserve the output
        root_logger_config = log_config[None]
        log_config[None] = LogConfig(
            level=logging.DEBUG, output=root_logger_config.output
        )

    logging_setup(log_config, verbose)

    if verbose:
        logging.debug("Running with --verbose")
    if config_text is not None:
        logging.debug(f'Finished reading configuration from {config}.')
    else:
        logging.debug('There was no configuration to parse.')


def _service(ctx) -> SigningService:
    service = ctx.obj.get('service')
    if service is None:
        service = ctx.obj['service'] = SigningService(
            config=ctx.obj['config']
        )
    return service


lib_option = click.option(
    '--lib', help='path to the PKCS#11 module [default: last one used]',
    required=False, type=str
)
slot_option = click.option(
    '--slot', help='slot of the token [default: last one used]',
    required=False, type=int
)


def _detect_library(service: SigningService) -> str:
    detected = service.detect_libraries()
    if not detected:
        raise click.ClickException(
            "No PKCS#11 module found; pass one with --lib."
        )
    lib = detected[0].path
    logger.info(f"Using {detected[0].name} module at {lib}")
    return lib


def _open_library(service: SigningService, lib):
    if lib is not None:
        service.init_token(lib)
        return
    remembered = service.settings.last_library_path
    if remembered is not None:
        try:
            service.init_token(remembered)
            return
        except (LibraryNotFound, InitializationFailed) as e:
            logger.warning(
                f"Could not load the last used module {remembered} "
                f"({e.msg}); detecting modules again."
            )
    service.init_token(_detect_library(service))


def _login(service: SigningService, slot):
    if slot is None:
        slot_ids = [token.slot_id for token in service.list_tokens()]
        slot = service.settings.last_slot_id
        if slot not in slot_ids:
            if slot is not None:
                logger.warning(
                    f"No token in the last used slot {slot}; using slot "
                    f"{slot_ids[0]}."
                )
            slot = slot_ids[0]
    with _read_pin() as pin:
        service.login_token(slot, pin.raw)


@cli.command(help='list the PKCS#11 modules installed on this system')
@click.pass_context
def detect(ctx):
    with tokensign_exception_manager():
        found = _service(ctx).detect_libraries()
    if not found:
        click.echo("No known PKCS#11 module found.")
    for lib in found:
        click.echo(f"{lib.name}: {lib.path}")


@cli.command(help='list the tokens that are plugged in')
@lib_option
@click.pass_context
def tokens(ctx, lib):
    service = _service(ctx)
    with tokensign_exception_manager():
        _open_library(service, lib)
        found = service.list_tokens()
    for token in found:
        click.echo(
            f"[{token.slot_id}] {token.label} "
            f"({token.manufacturer} {token.model}, serial {token.serial})"
        )


@cli.command(help='show the signing certificate on a token')
@lib_option
@slot_option
@click.pass_context
def cert(ctx, lib, slot):
    service = _service(ctx)
    with tokensign_exception_manager():
        _open_library(service, lib)
        _login(service, slot)
        try:
            info = service.get_certificate()
        finally:
            service.logout_token()
    click.echo(f"Subject:    {info.subject}")
    click.echo(f"Issuer:     {info.issuer}")
    click.echo(f"Serial:     {info.serial}")
    click.echo(f"Valid from: {info.valid_from}")
    click.echo(f"Valid to:   {info.valid_to}")
    click.echo(f"SHA-256:    {info.thumbprint}")


@cli.command(help='sign a PDF file with a key on a token')
@lib_option
@slot_option
@click.argument('infile', type=click.Path(exists=True, dir_okay=False))
@click.argument('outfile', type=click.Path(dir_okay=False))
@click.option('--visible', help='add a visible signature appearance',
              is_flag=True, default=False)
@click.option('--page', help='page to put the signature on, starting at 1',
              type=int, default=1, show_default=True)
@click.option('--rect', help='signature box as x1,y1,x2,y2 in points',
              required=False, type=str)
@click.option('--reason', help='reason for signing', required=False)
@click.option('--name', 'signer_name',
              help='signer name [default: common name of the certificate]',
              required=False)
@click.option('--no-timestamp', help='do not request a timestamp',
              is_flag=True, default=False)
@click.pass_context
def sign(ctx, lib, slot, infile, outfile, visible, page, rect, reason,
         signer_name, no_timestamp):
    rect = _parse_rect(rect)
    service = _service(ctx)
    with tokensign_exception_manager():
        service.validate_pdf_request(
            infile, outfile, visible, reason=reason,
            signer_name=signer_name, rect=rect, page=page,
        )
        _open_library(service, lib)
        _login(service, slot)
        try:
            outcome = service.sign_pdf(
                infile, outfile, visible, reason=reason,
                signer_name=signer_name, rect=rect, page=page,
                timestamp=not no_timestamp,
            )
        finally:
            service.logout_token()
    if not outcome.success:
        raise click.ClickException(
            f"{outcome.message} [{describe(outcome.code)}]"
        )
    if outcome.tsa_warning:
        click.echo(
            click.style(f"WARNING: {outcome.tsa_warning}", bold=True),
            err=True
        )
    click.echo(f"Signed document written to {outcome.output_path}")
