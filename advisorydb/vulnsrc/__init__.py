"""Readers for the AlmaLinux, Alpine, Amazon, Arch Linux, Ruby, Chainguard and Debian advisory data."""