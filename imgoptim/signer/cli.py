"""imgoptim-sign: mint a CloudFront signed URL for one object."""

from pathlib import Path

import typer

from imgoptim.signer.index import SigningError, sign_url

DEFAULT_DURATION = 300

app = typer.Typer(
    name='imgoptim-sign',
    help='Mint a time-bounded signed URL the distribution will accept.',
    add_completion=False,
)


@app.command()
def main(
    private_key_path: Path = typer.Option(
        ...,
        '--private-key',
        prompt='Path to private key file (PEM for CloudFront key pair)',
        exists=True,
        dir_okay=False,
        resolve_path=True,
        help='PEM file of the key pair registered with the distribution',
    ),
    key_pair_id: str = typer.Option(
        ...,
        '--key-pair-id',
        prompt='Key Pair ID',
        help='ID of the public key in the trusted key group',
    ),
    domain: str = typer.Option(
        ...,
        '--domain',
        prompt='Distribution domain (e.g. dxxxx.cloudfront.net or https://cdn.example.com)',
        help='Distribution domain, https:// is assumed when omitted',
    ),
    object_key: str = typer.Option(
        ...,
        '--object-key',
        prompt='Object key (e.g. folder/file.jpg)',
        help='Object key, optionally followed by a query string such as ?width=200',
    ),
    duration: float = typer.Option(
        DEFAULT_DURATION,
        '--duration',
        prompt='URL duration in seconds',
        help='Seconds the URL stays valid',
    ),
) -> None:
  try:
    url = sign_url(private_key_path.read_bytes(), key_pair_id, domain, object_key, duration)
  except (SigningError, OSError) as e:
    typer.echo(f'Error: {e}', err=True)
    raise typer.Exit(code=1)

  typer.echo(f'\nSigned URL:\n{url}\n')


if __name__ == '__main__':
  app()
