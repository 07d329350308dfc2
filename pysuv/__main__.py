from pysuv.main import pysuv


if __name__ == "__main__":
    pysuv()
