import argparse
import contextlib
import logging
import os
import platform
import shutil
import subprocess
import sys
import tempfile
import types
import zipfile
from dataclasses import dataclass
from typing import Mapping

import httpx

from .version import __version__

TERRAFORM_VERSION = '1.9.8'
CONFIG_FILE_NAME = 'wrapper.cfg'
LOG_FILE_NAME = 'terraform.log'
DOWNLOAD_URL = 'https://releases.hashicorp.com/terraform/{version}/terraform_{version}_{os}_{arch}.zip'

IS_WINDOWS = sys.platform.startswith('win')

logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(levelname)s: %(message)s')
log = logging.info
err = logging.error


class TerraformError(Exception):
  """Raised when the Terraform executable cannot be prepared."""


# ============================================================
# Terraform executable: $PATH, current directory or download
# ============================================================

_OS_NAMES = {
  'linux': 'linux',
  'darwin': 'darwin',
  'win32': 'windows',
  'cygwin': 'windows',
  'freebsd': 'freebsd',
  'openbsd': 'openbsd',
  'sunos': 'solaris',
}

_ARCH_NAMES = {
  'x86_64': 'amd64',
  'amd64': 'amd64',
  'aarch64': 'arm64',
  'arm64': 'arm64',
  'i386': '386',
  'i686': '386',
  'x86': '386',
  'armv6l': 'arm',
  'armv7l': 'arm',
}


def terraform_os():
  for prefix, name in _OS_NAMES.items():
    if sys.platform.startswith(prefix):
      return name
  raise TerraformError(f'unsupported operating system: {sys.platform}')


def terraform_arch():
  machine = platform.machine().lower()
  if machine not in _ARCH_NAMES:
    raise TerraformError(f'unsupported CPU architecture: {machine or "unknown"}')
  return _ARCH_NAMES[machine]


def executable_name():
  return 'terraform.exe' if IS_WINDOWS else 'terraform'


def download_url(version=TERRAFORM_VERSION, os_name=None, arch=None):
  return DOWNLOAD_URL.format(version=version, os=os_name or terraform_os(), arch=arch or terraform_arch())


def check_terraform_executable():
  """Return a path or command that runs Terraform, downloading it if needed."""
  executable = executable_name()

  path = shutil.which(executable)
  if path:
    print('Terraform found in PATH.')
    return path

  if os.path.isfile(executable):
    print('Terraform executable found in the current directory.')
    if not IS_WINDOWS:
      executable = './' + executable
    return executable

  print('Terraform not found in PATH or current directory. Downloading...')
  zip_path = download_terraform()
  return unzip_terraform(zip_path)


def download_terraform(client=None):
  """Stream the pinned Terraform release archive into a temporary file.

  The response status is not checked; a non-archive body fails later when
  the file is opened as a zip.
  """
  url = download_url()
  log('Downloading %s', url)
  owns_client = client is None
  if owns_client:
    client = httpx.Client(follow_redirects=True)
  fd, zip_path = tempfile.mkstemp(prefix='terraform_', suffix='.zip')
  try:
    with os.fdopen(fd, 'wb') as out, client.stream('GET', url) as resp:
      for chunk in resp.iter_bytes():
        out.write(chunk)
  except BaseException:
    os.remove(zip_path)
    raise
  finally:
    if owns_client:
      client.close()
  return zip_path


def unzip_terraform(zip_path):
  """Extract the archive into the working directory and return the executable reference."""
  name = executable_name()
  exec_path = ''
  try:
    with zipfile.ZipFile(zip_path) as archive:
      for info in archive.infolist():
        file_path = entry_path(info.filename)
        if info.is_dir():
          os.makedirs(file_path, exist_ok=True)
          continue
        extract_file(archive, info, file_path)
        if os.path.basename(exec_path) != name:
          exec_path = file_path
  finally:
    os.remove(zip_path)

  if not exec_path:
    raise TerraformError(f'archive {zip_path} contains no files')

  if not IS_WINDOWS:
    os.chmod(exec_path, 0o755)
    exec_path = './' + exec_path
  return exec_path


def entry_path(filename):
  """Return the relative path of an archive entry, refusing entries outside the working directory."""
  root = os.path.realpath(os.getcwd())
  target = os.path.realpath(os.path.join(root, filename))
  try:
    inside = os.path.commonpath([root, target]) == root
  except ValueError:
    # different drives on Windows
    inside = False
  if not inside:
    raise TerraformError(f'archive entry {filename} is outside the working directory')
  return os.path.relpath(target, root)


def extract_file(archive, info, dest):
  mode = (info.external_attr >> 16) & 0o777 or 0o644
  parent = os.path.dirname(dest)
  if parent:
    os.makedirs(parent, exist_ok=True)
  fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
  with os.fdopen(fd, 'wb') as out, archive.open(info) as src:
    shutil.copyfileobj(src, out)


# ============================================================
# wrapper.cfg
# ============================================================

@dataclass(frozen=True)
class Config:
  values: Mapping[str, str]
  api_token: bool = False
  oauth_client: bool = False


def parse_config(lines):
  values = {}
  api_token = False
  oauth_client = False
  for line in lines:
    if '=' not in line:
      continue
    key, value = line.split('=', 1)
    key, value = key.strip(), value.strip()
    values[key] = value
    # once switched on, a later line does not switch a mode off
    if key == 'api_token' and value == 'true':
      api_token = True
    elif key == 'oauth_client' and value == 'true':
      oauth_client = True
  return Config(types.MappingProxyType(values), api_token, oauth_client)


def load_config(file_name=CONFIG_FILE_NAME):
  with open(file_name, 'r', encoding='utf-8', newline='\n') as f:
    return parse_config(f)


# ============================================================
# Credentials: environment, wrapper.cfg or prompt
# ============================================================

API_TOKEN_VARS = (
  ('DT_ENV_URL', 'Input Dynatrace environment URL (SaaS: https://########.live.dynatrace.com or Managed: https://<dynatrace-host>/e/########): '),
  ('DT_API_TOKEN', 'Input Dynatrace API token (dt0c01.########.########): '),
)

OAUTH_CLIENT_VARS = (
  ('DT_CLIENT_ID', 'Input Dynatrace OAuth client ID (dt0s02.########): '),
  ('DT_CLIENT_SECRET', 'Input Dynatrace OAuth client secret (dt0s02.########.########): '),
  ('DT_ACCOUNT_ID', 'Input Dynatrace OAuth account ID (urn:dtaccount:{your-account-UUID}): '),
)


def prompt(message):
  try:
    return input(message).strip()
  except EOFError:
    return ''


def set_env_from_config_or_prompt(env_key, prompt_msg, config, environ=None):
  environ = os.environ if environ is None else environ
  if env_key in environ:
    return
  if env_key in config.values:
    environ[env_key] = config.values[env_key]
    return
  environ[env_key] = prompt(prompt_msg)


def set_environment_vars(config, environ=None):
  wanted = []
  if config.api_token:
    wanted.extend(API_TOKEN_VARS)
  if config.oauth_client:
    wanted.extend(OAUTH_CLIENT_VARS)
  for env_key, prompt_msg in wanted:
    set_env_from_config_or_prompt(env_key, prompt_msg, config, environ)


# ============================================================
# Terraform commands
# ============================================================

# step -> (terraform arguments, verb used in messages)
STEPS = {
  'initialize': (['init'], 'initialize'),
  'preview': (['plan'], 'preview'),
  'publish': (['apply', '-auto-approve'], 'publish'),
  'remove': (['destroy', '-auto-approve'], 'remove'),
}


class TerraformRunner:
  def __init__(self, terraform_path, log_file=None):
    self.terraform_path = terraform_path
    self.log_file = log_file

  def build_command(self, args):
    args = list(args)
    if self.log_file is not None:
      args.append('-no-color')
    if IS_WINDOWS:
      # cmd.exe resolves the .exe extension and relative paths
      return ['cmd.exe', '/C', self.terraform_path] + args
    return [self.terraform_path] + args

  def execute(self, *args):
    cmd = self.build_command(args)
    log('CMD: %s', ' '.join(cmd))
    if self.log_file is not None:
      self.log_file.flush()
    subprocess.run(cmd, stdout=self.log_file, stderr=self.log_file, check=True)

  def run(self, step):
    args, _ = STEPS[step]
    self.execute(*args)

  def init(self):
    self.run('initialize')

  def preview(self):
    self.run('preview')

  def publish(self):
    self.run('publish')

  def remove(self):
    self.run('remove')


def run_step(runner, step, fatal=False):
  """Run a menu or flag step with progress messages.

  Failures are logged; with fatal=True the process exits instead.
  """
  args, verb = STEPS[step]
  print(f'\nRunning Terraform {args[0]} to {verb} configuration...')
  try:
    runner.run(step)
  except (subprocess.CalledProcessError, OSError) as e:
    err('Failed to %s configuration: %s', verb, e)
    if fatal:
      sys.exit(1)
  print(f'Completed Terraform {args[0]}.')


MENU_CHOICES = {'1': 'preview', '2': 'publish', '3': 'remove'}

MENU = '''
--------------------------
Select an option:
1. Preview configuration (terraform plan)
2. Publish configuration (terraform apply)
3. Remove configuration (terraform destroy)
4. Exit'''


def display_menu(runner):
  while True:
    print(MENU)
    try:
      choice = input('Enter your choice: ').strip()
    except EOFError:
      choice = '4'

    if choice in MENU_CHOICES:
      run_step(runner, MENU_CHOICES[choice])
    elif choice == '4':
      print('Exiting.')
      return
    else:
      print('Invalid choice. Please enter 1, 2, 3, or 4.')


# ============================================================
# CLI
# ============================================================

def parse_args(argv):
  parser = argparse.ArgumentParser(
    prog='dtwrapper',
    description='Download Terraform if needed, provide Dynatrace credentials and run init/plan/apply/destroy.',
    allow_abbrev=False,
  )
  parser.add_argument('-apply', '--apply', action='store_true',
                      help="Run 'terraform apply' to publish configuration without menu")
  parser.add_argument('-destroy', '--destroy', action='store_true',
                      help="Run 'terraform destroy' to remove configuration without menu")
  parser.add_argument('-console', '--console', action='store_true',
                      help='Output Terraform stdout/stderr onto console instead of log file')
  parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
  return parser.parse_args(argv)


def main(argv):
  args = parse_args(argv)

  if args.apply and args.destroy:
    err('Cannot use both -apply and -destroy flags simultaneously.')
    sys.exit(1)

  try:
    terraform_path = check_terraform_executable()
  except (TerraformError, httpx.HTTPError, zipfile.BadZipFile, OSError) as e:
    err('Error preparing Terraform executable: %s', e)
    sys.exit(1)

  try:
    config = load_config(CONFIG_FILE_NAME)
  except (OSError, UnicodeDecodeError) as e:
    err('Error loading configuration: %s', e)
    sys.exit(1)

  with contextlib.ExitStack() as stack:
    log_file = None
    if not args.console:
      print(f'Redirecting Terraform output to {LOG_FILE_NAME}...')
      try:
        log_file = stack.enter_context(open(LOG_FILE_NAME, 'ab'))
      except OSError as e:
        err('Failed to open log file: %s', e)
        sys.exit(1)

    set_environment_vars(config)

    runner = TerraformRunner(terraform_path, log_file)
    try:
      runner.init()
    except (subprocess.CalledProcessError, OSError) as e:
      err('Error initializing Terraform: %s', e)
      sys.exit(1)

    if args.apply:
      run_step(runner, 'publish', fatal=True)
    elif args.destroy:
      run_step(runner, 'remove', fatal=True)
    else:
      display_menu(runner)


def cli_main():
    """Entry point for command line interface."""
    try:
        main(sys.argv[1:])
    except SystemExit as e:
        sys.exit(e.code)
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as e:
        err(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == '__main__':
  cli_main()
